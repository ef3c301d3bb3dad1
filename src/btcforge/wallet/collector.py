"""
UTXO collection and selection across the three address types of one key.
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Any

from loguru import logger

from btcforge.backends.base import UtxoOracle
from btcforge.constants import DUST_THRESHOLD, P2WPKH_OUTPUT_VBYTES, TX_OVERHEAD_VBYTES
from btcforge.models import (
    MIXED,
    PREFERRED_SCRIPT_TYPES,
    CollectionResult,
    ScriptType,
    SelectionResult,
    Utxo,
)
from btcforge.vsize import input_vsize
from btcforge.wallet.coinselect import make_result, select_utxos
from btcforge.wallet.keys import KeyMaterial


def _mixed_fee(selected: list[Utxo], fee_rate: float) -> int:
    # Destination and change are both costed as P2WPKH outputs
    vsize = (
        TX_OVERHEAD_VBYTES
        + sum(input_vsize(u.script_type) for u in selected)
        + 2 * P2WPKH_OUTPUT_VBYTES
    )
    return math.ceil(vsize * fee_rate)


def select_optimal_utxos(
    utxos: list[Utxo],
    target_sats: int,
    fee_rate: float,
    preferred_order: tuple[ScriptType, ...] = PREFERRED_SCRIPT_TYPES,
    dust_threshold: int = DUST_THRESHOLD,
) -> SelectionResult:
    """
    Prefer spending from a single script type, cheapest type first.

    Falls back to mixing types, ranking UTXOs by value per input vbyte.
    """
    by_type: dict[ScriptType, list[Utxo]] = {}
    for utxo in utxos:
        by_type.setdefault(utxo.script_type, []).append(utxo)

    for script_type in preferred_order:
        group = by_type.get(script_type)
        if not group:
            continue
        result = select_utxos(
            group,
            target_sats,
            fee_rate,
            change_type=ScriptType.P2WPKH,
            input_type=script_type,
            dust_threshold=dust_threshold,
        )
        if result.ok:
            logger.info(f"Funded from {script_type.value} UTXOs with {result.input_count} input(s)")
            return result

    ranked = sorted(
        (u for u in utxos if u.amount_sats > 0),
        key=lambda u: u.amount_sats / input_vsize(u.script_type),
        reverse=True,
    )
    selected: list[Utxo] = []
    total = 0
    for utxo in ranked:
        selected.append(utxo)
        total += utxo.amount_sats
        fee = _mixed_fee(selected, fee_rate)
        if total >= target_sats + fee:
            logger.info(f"Funded from mixed UTXO types with {len(selected)} input(s)")
            return make_result(selected, target_sats, fee, MIXED, dust_threshold)

    logger.warning(
        f"Insufficient funds across all types: need {target_sats} + fee, have {total}"
    )
    return SelectionResult.insufficient()


class UtxoCollector:
    """Gathers a key's UTXOs from every address type it controls."""

    def __init__(self, backend: UtxoOracle, dust_threshold: int = DUST_THRESHOLD):
        self.backend = backend
        self.dust_threshold = dust_threshold

    async def _scan_fallback(self, address: str, script_type: ScriptType) -> list[Utxo]:
        scanned = await self.backend.scan_unspent(address)
        tip = await self.backend.get_block_count() if scanned else 0
        return [
            Utxo(
                txid=s.txid,
                vout=s.vout,
                address=address,
                amount_sats=s.amount_sats,
                confirmations=tip - s.height + 1 if s.height else 0,
                script_type=script_type,
            )
            for s in scanned
        ]

    async def _collect_type(
        self, address: str, script_type: ScriptType, min_confirmations: int
    ) -> list[Utxo]:
        try:
            found = await self.backend.list_unspent([address], min_confirmations)
        except Exception as e:
            logger.warning(f"listunspent failed for {script_type.value}, scanning UTXO set: {e}")
            try:
                found = await self._scan_fallback(address, script_type)
            except Exception as scan_error:
                logger.warning(f"UTXO scan failed for {script_type.value}: {scan_error}")
                return []
            found = [u for u in found if u.confirmations >= min_confirmations]

        # The address we queried decides the type, not the oracle's guess
        return [replace(u, script_type=script_type) for u in found if u.spendable]

    async def collect(
        self, key_material: KeyMaterial, min_confirmations: int = 0
    ) -> CollectionResult:
        addresses = key_material.addresses

        if not await self.backend.ping():
            logger.warning("UTXO oracle unreachable, returning empty collection")
            return CollectionResult(addresses=addresses, degraded=True)

        utxos_by_type: dict[ScriptType, list[Utxo]] = {}
        for script_type in PREFERRED_SCRIPT_TYPES:
            utxos = await self._collect_type(
                addresses[script_type], script_type, min_confirmations
            )
            utxos_by_type[script_type] = utxos
            logger.debug(f"Found {len(utxos)} {script_type.value} UTXO(s)")

        total_utxos = [u for utxos in utxos_by_type.values() for u in utxos]
        total_balance = sum(u.amount_sats for u in total_utxos)
        logger.info(f"Collected {len(total_utxos)} UTXO(s), balance {total_balance} sats")

        return CollectionResult(
            addresses=addresses,
            utxos_by_type=utxos_by_type,
            total_utxos=total_utxos,
            total_balance_sats=total_balance,
        )

    def select_across_types(
        self,
        utxos: list[Utxo],
        target_sats: int,
        fee_rate: float,
        preferred_order: tuple[ScriptType, ...] = PREFERRED_SCRIPT_TYPES,
    ) -> SelectionResult:
        return select_optimal_utxos(
            utxos, target_sats, fee_rate, preferred_order, self.dust_threshold
        )

    async def balance(self, key_material: KeyMaterial) -> dict[str, Any]:
        """Total and per-type balance of the key's addresses."""
        collection = await self.collect(key_material)
        return {
            "total_sats": collection.total_balance_sats,
            "by_type": {t.value: v for t, v in collection.balance_by_type().items()},
            "utxo_count": len(collection.total_utxos),
            "addresses": {t.value: a for t, a in collection.addresses.items()},
            "degraded": collection.degraded,
        }
