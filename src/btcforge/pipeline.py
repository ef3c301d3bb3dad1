"""
End-to-end transaction pipeline.

collect -> select -> assemble -> sign -> finalize -> broadcast

Each stage takes the previous stage's record and returns a new one. Request
parameters are validated before any oracle is contacted, and every request
gets its own correlation id in the log context.
"""

from __future__ import annotations

from uuid import uuid4

from loguru import logger
from pydantic import ValidationError

from btcforge.backends.base import BlockchainBackend
from btcforge.config import SendRequest, Settings
from btcforge.errors import (
    InsufficientFundsError,
    InvalidInputError,
    OracleUnreachableError,
)
from btcforge.models import (
    CollectionResult,
    NetworkType,
    ScriptType,
    SelectionResult,
    SignedTransactionRecord,
    Utxo,
)
from btcforge.tx.assembler import TransactionAssembler, UnsignedTransaction, build_outputs
from btcforge.tx.finalizer import Finalizer
from btcforge.tx.signer import SignedTransaction, SigningEngine
from btcforge.wallet.address import validate_address
from btcforge.wallet.collector import UtxoCollector
from btcforge.wallet.keys import KeyMaterial


class TransactionPipeline:
    def __init__(
        self,
        backend: BlockchainBackend,
        key_material: KeyMaterial,
        settings: Settings | None = None,
    ):
        self.backend = backend
        self.key_material = key_material
        self.settings = settings or Settings(network=key_material.network.value)
        self.network = NetworkType(self.settings.network)
        if key_material.network != self.network:
            raise InvalidInputError(
                f"Key material is for {key_material.network.value}, "
                f"pipeline is configured for {self.network.value}"
            )

        self.collector = UtxoCollector(backend, dust_threshold=self.settings.dust_threshold)
        self.assembler = TransactionAssembler(
            backend, self.network, max_concurrent_lookups=self.settings.max_concurrent_lookups
        )
        self.signer = SigningEngine(key_material)
        self.finalizer = Finalizer()

    def validate_request(
        self,
        destination: str,
        amount_sats: int,
        fee_rate: float | None = None,
        change_address: str | None = None,
    ) -> SendRequest:
        """Reject malformed requests before any I/O."""
        try:
            request = SendRequest(
                destination=destination,
                amount_sats=amount_sats,
                fee_rate=fee_rate,
                change_address=change_address,
            )
        except ValidationError as e:
            raise InvalidInputError(f"Invalid send request: {e}") from e

        validate_address(request.destination, self.network)
        if request.change_address is not None:
            validate_address(request.change_address, self.network)
        return request

    async def estimate_fee_rate(self, target_blocks: int | None = None) -> float:
        """Oracle estimate in sat/vB, or the configured fallback."""
        target = target_blocks or self.settings.fee_target_blocks
        try:
            fee_rate = await self.backend.estimate_fee_rate(target)
        except OracleUnreachableError as e:
            logger.warning(f"Fee oracle unreachable: {e}")
            fee_rate = None

        if fee_rate is None or fee_rate <= 0:
            logger.warning(
                f"Fee estimation unavailable, using fallback {self.settings.fee_fallback} sat/vB"
            )
            return self.settings.fee_fallback
        return fee_rate

    async def collect(self, min_confirmations: int | None = None) -> CollectionResult:
        if min_confirmations is None:
            min_confirmations = self.settings.min_confirmations
        return await self.collector.collect(self.key_material, min_confirmations)

    def select(self, utxos: list[Utxo], target_sats: int, fee_rate: float) -> SelectionResult:
        selection = self.collector.select_across_types(utxos, target_sats, fee_rate)
        if not selection.ok:
            available = sum(u.amount_sats for u in utxos)
            logger.error(f"Insufficient funds: need {target_sats} + fee, have {available}")
            raise InsufficientFundsError(
                f"Insufficient funds: need {target_sats} sats plus fee, have {available}",
                target_sats=target_sats,
                available_sats=available,
                fee_rate=fee_rate,
            )
        return selection

    async def assemble(
        self,
        selection: SelectionResult,
        destination: str,
        amount_sats: int,
        change_address: str | None = None,
    ) -> UnsignedTransaction:
        change = change_address or self.key_material.address_for(ScriptType.P2WPKH)
        outputs = build_outputs(destination, amount_sats, change, selection.change_sats)
        return await self.assembler.assemble(selection, outputs, self.key_material)

    def sign(self, unsigned: UnsignedTransaction) -> SignedTransaction:
        return self.signer.sign(unsigned)

    def finalize(self, signed: SignedTransaction) -> SignedTransactionRecord:
        return self.finalizer.finalize(signed)

    async def _prepare(self, request: SendRequest) -> UnsignedTransaction:
        fee_rate = request.fee_rate or await self.estimate_fee_rate()

        collection = await self.collect()
        if collection.degraded:
            raise OracleUnreachableError("UTXO oracle unreachable, cannot fund transaction")

        selection = self.select(collection.total_utxos, request.amount_sats, fee_rate)
        return await self.assemble(
            selection, request.destination, request.amount_sats, request.change_address
        )

    async def build(
        self,
        destination: str,
        amount_sats: int,
        fee_rate: float | None = None,
        change_address: str | None = None,
    ) -> SignedTransactionRecord:
        """Build a signed, finalized transaction without broadcasting it."""
        request = self.validate_request(destination, amount_sats, fee_rate, change_address)

        with logger.contextualize(request_id=uuid4().hex):
            logger.info(f"Building transaction: {request.amount_sats} sats")
            unsigned = await self._prepare(request)
            return self.finalize(self.sign(unsigned))

    async def build_unsigned(
        self,
        destination: str,
        amount_sats: int,
        fee_rate: float | None = None,
        change_address: str | None = None,
    ) -> str:
        """Base64 PSBT for the same transaction build() would sign."""
        request = self.validate_request(destination, amount_sats, fee_rate, change_address)

        with logger.contextualize(request_id=uuid4().hex):
            logger.info(f"Building unsigned PSBT: {request.amount_sats} sats")
            unsigned = await self._prepare(request)
            return unsigned.to_base64()

    async def broadcast(self, record: SignedTransactionRecord) -> str:
        txid = await self.backend.submit_raw_transaction(record.raw_hex)
        if txid != record.txid:
            logger.warning(f"Oracle reported txid {txid}, expected {record.txid}")
        return txid

    async def send(
        self,
        destination: str,
        amount_sats: int,
        fee_rate: float | None = None,
        change_address: str | None = None,
    ) -> SignedTransactionRecord:
        """Build, sign, finalize and broadcast a payment."""
        request = self.validate_request(destination, amount_sats, fee_rate, change_address)

        with logger.contextualize(request_id=uuid4().hex):
            logger.info(f"Sending {request.amount_sats} sats to {request.destination}")
            unsigned = await self._prepare(request)
            record = self.finalize(self.sign(unsigned))
            await self.broadcast(record)
            return record
