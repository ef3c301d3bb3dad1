"""
Deterministic in-memory blockchain backend.

Holds a tiny UTXO set and transaction index in dicts. Used by the test suite
and for dry runs where no node is available.
"""

from __future__ import annotations

from loguru import logger

from btcforge.backends.base import (
    BlockchainBackend,
    PreviousTransaction,
    ScannedOutput,
)
from btcforge.errors import BroadcastError, OracleUnreachableError
from btcforge.models import NetworkType, ScriptType, Utxo
from btcforge.tx.serialization import (
    Transaction,
    TransactionParseError,
    TxIn,
    TxOut,
    hash256,
    parse_transaction,
)
from btcforge.wallet.address import address_to_scriptpubkey, script_type_from_script


class InMemoryBackend(BlockchainBackend):
    def __init__(
        self,
        network: NetworkType = NetworkType.REGTEST,
        fee_rate: float | None = 1.0,
        block_count: int = 200,
    ):
        self.network = NetworkType(network)
        self.fee_rate = fee_rate
        self.block_count = block_count
        self.reachable = True
        self.transactions: dict[str, bytes] = {}
        self.broadcasts: list[str] = []
        # outpoint -> (utxo, confirmation height or None)
        self._utxos: dict[str, tuple[Utxo, int | None]] = {}
        self._funding_counter = 0

    def _check_reachable(self) -> None:
        if not self.reachable:
            raise OracleUnreachableError("In-memory backend is offline")

    def _confirmations(self, height: int | None) -> int:
        if height is None:
            return 0
        return self.block_count - height + 1

    def add_transaction(self, raw: bytes) -> str:
        """Index a raw transaction so get_raw_transaction can serve it."""
        txid = parse_transaction(raw).txid
        self.transactions[txid] = raw
        return txid

    def add_utxo(self, utxo: Utxo) -> None:
        """Register a UTXO without a backing transaction."""
        height = self.block_count - utxo.confirmations + 1 if utxo.confirmations > 0 else None
        self._utxos[utxo.outpoint] = (utxo, height)

    def fund(
        self,
        address: str,
        amount_sats: int,
        confirmations: int = 1,
        script_type: ScriptType | None = None,
    ) -> Utxo:
        """
        Create a funding transaction paying amount_sats to address.

        The funding transaction spends a synthetic outpoint derived from a
        counter, so the same sequence of calls always yields the same txids.
        """
        self._funding_counter += 1
        source = hash256(f"funding-{self._funding_counter}".encode())[::-1].hex()
        script = address_to_scriptpubkey(address, self.network)
        tx = Transaction(
            inputs=[TxIn(source, 0, script_sig=b"\x51", sequence=0xFFFFFFFF)],
            outputs=[TxOut(amount_sats, script)],
        )
        raw = tx.serialize()
        txid = self.add_transaction(raw)

        utxo = Utxo(
            txid=txid,
            vout=0,
            address=address,
            amount_sats=amount_sats,
            confirmations=confirmations,
            script_type=script_type or script_type_from_script(script) or ScriptType.P2PKH,
        )
        self.add_utxo(utxo)
        logger.debug(f"Funded {address} with {amount_sats} sats in {txid}")
        return utxo

    async def list_unspent(self, addresses: list[str], min_confirmations: int = 0) -> list[Utxo]:
        self._check_reachable()
        wanted = set(addresses)
        return [
            utxo
            for utxo, height in self._utxos.values()
            if utxo.address in wanted and self._confirmations(height) >= min_confirmations
        ]

    async def scan_unspent(self, address: str) -> list[ScannedOutput]:
        self._check_reachable()
        return [
            ScannedOutput(utxo.txid, utxo.vout, utxo.amount_sats, height)
            for utxo, height in self._utxos.values()
            if utxo.address == address
        ]

    async def get_block_count(self) -> int:
        self._check_reachable()
        return self.block_count

    async def ping(self) -> bool:
        return self.reachable

    async def get_raw_transaction(self, txid: str) -> PreviousTransaction | None:
        self._check_reachable()
        raw = self.transactions.get(txid)
        if raw is None:
            return None
        return PreviousTransaction.from_raw(raw)

    async def submit_raw_transaction(self, raw_hex: str) -> str:
        self._check_reachable()
        try:
            tx = parse_transaction(bytes.fromhex(raw_hex))
        except (ValueError, TransactionParseError) as e:
            raise BroadcastError(f"Broadcast rejected: {e}") from e

        for inp in tx.inputs:
            self._utxos.pop(f"{inp.txid}:{inp.vout}", None)
        self.transactions[tx.txid] = bytes.fromhex(raw_hex)
        self.broadcasts.append(raw_hex)
        logger.info(f"Broadcast transaction: {tx.txid}")
        return tx.txid

    async def estimate_fee_rate(self, target_blocks: int = 6) -> float | None:
        return self.fee_rate
