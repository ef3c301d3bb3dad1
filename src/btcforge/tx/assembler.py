"""
Unsigned transaction assembly.

Resolves every selected UTXO against its previous transaction, attaches the
metadata its script type needs for signing and lays out a version 2,
locktime 0 skeleton with opt-in RBF on every input. The skeleton travels
between stages as a PSBT.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

from embit.psbt import InputScope
from loguru import logger

from btcforge.backends.base import PreviousTransaction, TransactionOracle
from btcforge.constants import MAX_OUTPUT_INDEX, RBF_SEQUENCE, SIGHASH_ALL, TX_VERSION
from btcforge.errors import InvalidInputError, MalformedPreviousTransactionError
from btcforge.models import (
    SCRIPT_TYPE_PARAMS,
    NetworkType,
    ScriptType,
    SelectionResult,
    TxInputSpec,
    TxOutputSpec,
    Utxo,
)
from btcforge.tx.psbt import (
    PSBT,
    PSBTError,
    get_non_witness_utxo,
    get_redeem_script,
    get_witness_utxo,
    new_psbt,
    psbt_from_base64,
    set_non_witness_utxo,
    set_redeem_script,
    set_witness_utxo,
    unsigned_transaction,
)
from btcforge.tx.serialization import (
    Transaction,
    TransactionParseError,
    TxIn,
    TxOut,
    parse_transaction,
)
from btcforge.wallet.address import (
    address_to_scriptpubkey,
    script_type_from_script,
    scriptpubkey_to_address,
)
from btcforge.wallet.keys import KeyMaterial

# Plain outpoint given as (txid, vout); script type comes from the previous output
Outpoint = tuple[str, int]


def output_script(output: TxOutputSpec, network: NetworkType) -> bytes:
    if output.script is not None:
        return output.script
    return address_to_scriptpubkey(output.address, network)


@dataclass
class UnsignedTransaction:
    """Transaction skeleton plus the per-input data signers need."""

    inputs: list[TxInputSpec]
    outputs: list[TxOutputSpec]
    network: NetworkType = NetworkType.REGTEST
    version: int = TX_VERSION
    locktime: int = 0
    _scripts: list[bytes] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._scripts = [output_script(out, self.network) for out in self.outputs]

    @property
    def total_input_sats(self) -> int:
        return sum(inp.previous_output_value_sats for inp in self.inputs)

    @property
    def total_output_sats(self) -> int:
        return sum(out.value_sats for out in self.outputs)

    @property
    def fee_sats(self) -> int:
        return self.total_input_sats - self.total_output_sats

    def to_transaction(self) -> Transaction:
        return Transaction(
            inputs=[TxIn(inp.txid, inp.vout, sequence=inp.sequence) for inp in self.inputs],
            outputs=[
                TxOut(out.value_sats, script)
                for out, script in zip(self.outputs, self._scripts, strict=True)
            ],
            version=self.version,
            locktime=self.locktime,
        )

    def to_psbt(self) -> PSBT:
        psbt = new_psbt(self.to_transaction())
        for spec, psbt_input in zip(self.inputs, psbt.inputs, strict=True):
            if SCRIPT_TYPE_PARAMS[spec.script_type].needs_previous_tx:
                try:
                    set_non_witness_utxo(psbt_input, spec.previous_raw_tx or b"")
                except PSBTError as e:
                    raise MalformedPreviousTransactionError(
                        f"Previous transaction {spec.txid} cannot be embedded: {e}",
                        txid=spec.txid,
                        vout=spec.vout,
                    ) from e
            else:
                set_witness_utxo(
                    psbt_input, TxOut(spec.previous_output_value_sats, spec.previous_output_script)
                )
            if spec.redeem_script is not None:
                set_redeem_script(psbt_input, spec.redeem_script)
            psbt_input.sighash_type = SIGHASH_ALL
        return psbt

    def to_base64(self) -> str:
        return self.to_psbt().to_base64()

    @classmethod
    def from_psbt(
        cls, psbt: PSBT, network: NetworkType = NetworkType.REGTEST
    ) -> UnsignedTransaction:
        tx = unsigned_transaction(psbt)
        inputs = [
            _input_spec_from_psbt(txin, psbt_input, network)
            for txin, psbt_input in zip(tx.inputs, psbt.inputs, strict=True)
        ]
        outputs = [_output_spec_from_script(out, network) for out in tx.outputs]
        return cls(
            inputs=inputs,
            outputs=outputs,
            network=network,
            version=tx.version,
            locktime=tx.locktime,
        )

    @classmethod
    def from_base64(
        cls, encoded: str, network: NetworkType = NetworkType.REGTEST
    ) -> UnsignedTransaction:
        try:
            psbt = psbt_from_base64(encoded)
        except PSBTError as e:
            raise InvalidInputError(f"Invalid PSBT: {e}") from e
        return cls.from_psbt(psbt, network)


def _input_spec_from_psbt(
    txin: TxIn, psbt_input: InputScope, network: NetworkType
) -> TxInputSpec:
    raw = get_non_witness_utxo(psbt_input)
    witness_utxo = get_witness_utxo(psbt_input)
    if witness_utxo is not None:
        script = witness_utxo.script
        value = witness_utxo.value
    elif raw is not None:
        try:
            previous = parse_transaction(raw)
            script = previous.outputs[txin.vout].script
            value = previous.outputs[txin.vout].value
        except (TransactionParseError, IndexError) as e:
            raise MalformedPreviousTransactionError(
                f"PSBT input {txin.txid}:{txin.vout} has a bad previous transaction",
                txid=txin.txid,
                vout=txin.vout,
            ) from e
    else:
        raise InvalidInputError(f"PSBT input {txin.txid}:{txin.vout} has no UTXO data")

    script_type = script_type_from_script(script)
    if script_type is None:
        raise InvalidInputError(f"PSBT input {txin.txid}:{txin.vout} has unsupported script")

    return TxInputSpec(
        txid=txin.txid,
        vout=txin.vout,
        address=scriptpubkey_to_address(script, network),
        script_type=script_type,
        previous_output_script=script,
        previous_output_value_sats=value,
        previous_raw_tx=raw if script_type == ScriptType.P2PKH else None,
        redeem_script=get_redeem_script(psbt_input),
        sequence=txin.sequence,
    )


def _output_spec_from_script(out: TxOut, network: NetworkType) -> TxOutputSpec:
    try:
        address = scriptpubkey_to_address(out.script, network)
    except InvalidInputError:
        return TxOutputSpec(value_sats=out.value, script=out.script)
    return TxOutputSpec(value_sats=out.value, address=address)


def check_outpoint(source: Utxo | Outpoint) -> Outpoint:
    """(txid, vout) of source, rejecting anything that cannot be serialized."""
    if isinstance(source, Utxo):
        txid, vout = source.txid, source.vout
    else:
        txid, vout = source

    try:
        well_formed = len(bytes.fromhex(txid)) == 32
    except (TypeError, ValueError):
        well_formed = False
    if not well_formed:
        raise InvalidInputError(f"Invalid txid {txid!r}", txid=txid, vout=vout)
    if isinstance(vout, bool) or not isinstance(vout, int) or not 0 <= vout <= MAX_OUTPUT_INDEX:
        raise InvalidInputError(
            f"Output index {vout!r} of {txid} is outside 0..{MAX_OUTPUT_INDEX}",
            txid=txid,
            vout=vout,
        )
    return txid, vout


def build_outputs(
    destination: str,
    amount_sats: int,
    change_address: str | None = None,
    change_sats: int = 0,
) -> list[TxOutputSpec]:
    """Destination first, change only when there is any."""
    outputs = [TxOutputSpec(value_sats=amount_sats, address=destination)]
    if change_sats > 0:
        if change_address is None:
            raise InvalidInputError("Change output needs a change address")
        outputs.append(TxOutputSpec(value_sats=change_sats, address=change_address))
    return outputs


class TransactionAssembler:
    """Builds unsigned transactions from selected UTXOs."""

    def __init__(
        self,
        backend: TransactionOracle,
        network: NetworkType = NetworkType.REGTEST,
        max_concurrent_lookups: int = 1,
    ):
        if max_concurrent_lookups < 1:
            raise InvalidInputError("max_concurrent_lookups must be at least 1")
        self.backend = backend
        self.network = NetworkType(network)
        self.max_concurrent_lookups = max_concurrent_lookups

    async def _fetch_previous(
        self, txid: str, vout: int, semaphore: asyncio.Semaphore
    ) -> PreviousTransaction:
        async with semaphore:
            logger.debug(f"Fetching previous transaction {txid}")
            previous = await self.backend.get_raw_transaction(txid)

        if previous is None:
            raise MalformedPreviousTransactionError(
                f"Previous transaction {txid} not found", txid=txid, vout=vout
            )
        if vout >= len(previous.outputs):
            raise MalformedPreviousTransactionError(
                f"Output {vout} not found in transaction {txid} "
                f"({len(previous.outputs)} outputs)",
                txid=txid,
                vout=vout,
            )
        return previous

    async def _resolve_one(
        self,
        source: Utxo | Outpoint,
        key_material: KeyMaterial | None,
        semaphore: asyncio.Semaphore,
    ) -> TxInputSpec:
        txid, vout = check_outpoint(source)
        previous = await self._fetch_previous(txid, vout, semaphore)
        prevout = previous.outputs[vout]
        actual_type = script_type_from_script(prevout.script)

        if isinstance(source, Utxo):
            script_type = ScriptType(source.script_type)
            address = source.address
            if actual_type != script_type:
                raise MalformedPreviousTransactionError(
                    f"Output {txid}:{vout} is not a {script_type.value} output",
                    txid=txid,
                    vout=vout,
                )
            if source.amount_sats != prevout.value_sats:
                logger.warning(
                    f"UTXO {source.outpoint} reported {source.amount_sats} sats, "
                    f"previous transaction says {prevout.value_sats}"
                )
        else:
            if actual_type is None:
                raise InvalidInputError(f"Output {txid}:{vout} has an unsupported script")
            script_type = actual_type
            address = scriptpubkey_to_address(prevout.script, self.network)

        params = SCRIPT_TYPE_PARAMS[script_type]
        redeem_script = None
        if params.needs_redeem_script:
            if key_material is None:
                raise InvalidInputError(
                    f"{script_type.value} input {txid}:{vout} needs the spending key"
                )
            redeem_script = key_material.redeem_script

        return TxInputSpec(
            txid=txid,
            vout=vout,
            address=address,
            script_type=script_type,
            previous_output_script=prevout.script,
            previous_output_value_sats=prevout.value_sats,
            previous_raw_tx=previous.raw if params.needs_previous_tx else None,
            redeem_script=redeem_script,
            sequence=RBF_SEQUENCE,
        )

    async def resolve_inputs(
        self,
        selected: Sequence[Utxo | Outpoint],
        key_material: KeyMaterial | None = None,
    ) -> list[TxInputSpec]:
        """
        Resolve inputs in order; lookups overlap up to max_concurrent_lookups.

        The first failure cancels lookups still in flight. When several inputs
        fail, the one listed first is reported.
        """
        for source in selected:
            check_outpoint(source)

        semaphore = asyncio.Semaphore(self.max_concurrent_lookups)
        tasks: list[asyncio.Task[TxInputSpec]] = []
        try:
            async with asyncio.TaskGroup() as group:
                for source in selected:
                    tasks.append(
                        group.create_task(self._resolve_one(source, key_material, semaphore))
                    )
        except ExceptionGroup as failures:
            errors = [t.exception() for t in tasks if t.done() and not t.cancelled()]
            raise next((e for e in errors if e is not None), failures.exceptions[0])

        return [task.result() for task in tasks]

    async def assemble(
        self,
        selection: SelectionResult | Sequence[Utxo | Outpoint],
        outputs: list[TxOutputSpec],
        key_material: KeyMaterial | None = None,
    ) -> UnsignedTransaction:
        selected = selection.selected if isinstance(selection, SelectionResult) else selection
        if not selected:
            raise InvalidInputError("Cannot assemble a transaction without inputs")
        if not outputs:
            raise InvalidInputError("Cannot assemble a transaction without outputs")

        # Fail on addresses from the wrong network before any lookup
        for out in outputs:
            output_script(out, self.network)

        inputs = await self.resolve_inputs(selected, key_material)

        unsigned = UnsignedTransaction(inputs=inputs, outputs=list(outputs), network=self.network)
        if unsigned.fee_sats < 0:
            raise InvalidInputError(
                f"Outputs ({unsigned.total_output_sats}) exceed "
                f"inputs ({unsigned.total_input_sats})"
            )

        logger.info(
            f"Assembled unsigned transaction: {len(inputs)} input(s), "
            f"{len(outputs)} output(s), fee {unsigned.fee_sats} sats"
        )
        return unsigned


async def build_unsigned_psbt(
    backend: TransactionOracle,
    inputs: Sequence[Utxo | Outpoint],
    outputs: list[TxOutputSpec],
    network: NetworkType = NetworkType.REGTEST,
    key_material: KeyMaterial | None = None,
) -> str:
    """Base64 PSBT for signing elsewhere."""
    assembler = TransactionAssembler(backend, network)
    unsigned = await assembler.assemble(inputs, outputs, key_material)
    return unsigned.to_base64()
