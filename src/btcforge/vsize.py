"""
Virtual-size and fee estimation.

Pure functions over the script type dispatch table. Unknown script types are
costed as P2PKH, the most expensive input, so fees are never underestimated.
"""

from __future__ import annotations

import math

from btcforge.constants import TX_OVERHEAD_VBYTES
from btcforge.models import SCRIPT_TYPE_PARAMS, ScriptType, ScriptTypeParams


def _params(script_type: ScriptType | str | None) -> ScriptTypeParams:
    try:
        return SCRIPT_TYPE_PARAMS[ScriptType(script_type)]
    except (ValueError, KeyError):
        return SCRIPT_TYPE_PARAMS[ScriptType.P2PKH]


def input_vsize(script_type: ScriptType | str | None) -> int:
    return _params(script_type).input_vsize


def output_vsize(script_type: ScriptType | str | None) -> int:
    return _params(script_type).output_vsize


def estimate_vsize(
    num_inputs: int,
    input_type: ScriptType | str | None = ScriptType.P2WPKH,
    change_type: ScriptType | str | None = ScriptType.P2WPKH,
) -> int:
    """
    Estimate vsize of a spend with one destination and one change output.

    The destination output is costed with the input script type, matching how
    a wallet usually sends to a counterparty of its own kind.
    """
    return (
        TX_OVERHEAD_VBYTES
        + num_inputs * input_vsize(input_type)
        + output_vsize(input_type)
        + output_vsize(change_type)
    )


def calculate_fee(vsize: int, fee_rate: float) -> int:
    """fee = ceil(vsize * fee_rate)"""
    return math.ceil(vsize * fee_rate)


def fee_for_inputs(
    num_inputs: int,
    input_type: ScriptType | str | None,
    change_type: ScriptType | str | None,
    fee_rate: float,
) -> int:
    return calculate_fee(estimate_vsize(num_inputs, input_type, change_type), fee_rate)
