"""
Coin selection for a single script type.

Tries to fund the target with as few inputs as possible:
1. one input, in the order the UTXOs were given
2. any pair, in the order the UTXOs were given
3. any triple among the first MAX_TRIPLE_CANDIDATES UTXOs
4. greedy largest-first, recomputing the fee after every addition

The fee is recomputed for each candidate input count, so a larger set never
gets away with the fee of a smaller one.
"""

from __future__ import annotations

from itertools import combinations

from loguru import logger

from btcforge.constants import DUST_THRESHOLD, MAX_TRIPLE_CANDIDATES
from btcforge.models import ScriptType, SelectionResult, Utxo
from btcforge.vsize import fee_for_inputs


def fold_dust(change: int, fee: int, dust_threshold: int) -> tuple[int, int, int]:
    """
    Fold sub-dust change into the fee.

    Returns:
        (change, fee, dropped) after folding
    """
    if 0 < change < dust_threshold:
        return 0, fee + change, change
    return change, fee, 0


def make_result(
    selected: tuple[Utxo, ...] | list[Utxo],
    target_sats: int,
    fee: int,
    script_type: ScriptType | str | None,
    dust_threshold: int = DUST_THRESHOLD,
) -> SelectionResult:
    total = sum(u.amount_sats for u in selected)
    change, fee, dropped = fold_dust(total - target_sats - fee, fee, dust_threshold)
    if dropped:
        logger.debug(f"Folded {dropped} sats of dust change into the fee")
    return SelectionResult(
        selected=tuple(selected),
        total_input_sats=total,
        fee_sats=fee,
        change_sats=change,
        script_type=script_type,
        dropped_dust_sats=dropped,
    )


def select_utxos(
    utxos: list[Utxo],
    target_sats: int,
    fee_rate: float,
    change_type: ScriptType = ScriptType.P2WPKH,
    input_type: ScriptType = ScriptType.P2WPKH,
    dust_threshold: int = DUST_THRESHOLD,
) -> SelectionResult:
    """
    Select UTXOs covering target_sats plus the fee at fee_rate (sat/vB).

    Never raises for an unfundable target: returns
    SelectionResult.insufficient() instead.
    """
    candidates = [u for u in utxos if u.amount_sats > 0]

    def fee(n: int) -> int:
        return fee_for_inputs(n, input_type, change_type, fee_rate)

    def done(selected: tuple[Utxo, ...] | list[Utxo], n_fee: int) -> SelectionResult:
        result = make_result(selected, target_sats, n_fee, input_type, dust_threshold)
        logger.debug(
            f"Selected {result.input_count} {input_type} input(s): "
            f"total={result.total_input_sats}, fee={result.fee_sats}, change={result.change_sats}"
        )
        return result

    fee_1 = fee(1)
    for utxo in candidates:
        if utxo.amount_sats >= target_sats + fee_1:
            return done((utxo,), fee_1)

    fee_2 = fee(2)
    for pair in combinations(candidates, 2):
        if sum(u.amount_sats for u in pair) >= target_sats + fee_2:
            return done(pair, fee_2)

    fee_3 = fee(3)
    for triple in combinations(candidates[:MAX_TRIPLE_CANDIDATES], 3):
        if sum(u.amount_sats for u in triple) >= target_sats + fee_3:
            return done(triple, fee_3)

    selected: list[Utxo] = []
    total = 0
    for utxo in sorted(candidates, key=lambda u: u.amount_sats, reverse=True):
        selected.append(utxo)
        total += utxo.amount_sats
        n_fee = fee(len(selected))
        if total >= target_sats + n_fee:
            return done(selected, n_fee)

    logger.debug(
        f"Insufficient {input_type} funds: need {target_sats} + fee, "
        f"have {sum(u.amount_sats for u in candidates)}"
    )
    return SelectionResult.insufficient()
