"""
Bitcoin Core RPC blockchain backend.

Uses listunspent for addresses the node watches and falls back to
scantxoutset for addresses it does not.
"""

from __future__ import annotations

import asyncio
import os
import random
from typing import Any

import httpx
from loguru import logger

from btcforge.backends.base import (
    BlockchainBackend,
    PreviousOutput,
    PreviousTransaction,
    ScannedOutput,
)
from btcforge.errors import (
    BroadcastError,
    InvalidInputError,
    MalformedPreviousTransactionError,
    OracleUnreachableError,
)
from btcforge.models import NetworkType, ScriptType, Utxo, btc_to_sats
from btcforge.wallet.address import script_type_from_address

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0

# Timeout for scantxoutset calls - mainnet scans can take 90+ seconds
SCAN_RPC_TIMEOUT = 300.0

# Bitcoin Core only runs one scantxoutset at a time
SCAN_MAX_RETRIES = 10
SCAN_BASE_DELAY = 0.5  # seconds, doubled per attempt

# listunspent upper bound on confirmations
MAX_CONFIRMATIONS = 9_999_999

# RPC_INVALID_ADDRESS_OR_KEY, returned for unknown transactions
RPC_NOT_FOUND = -5
RPC_INVALID_PARAMETER = -8

# WARNING: Enabling this will log wallet addresses to the log
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


class RpcError(ValueError):
    """Error object returned by the node."""

    def __init__(self, code: int | str, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.rpc_message = message


def _infer_script_type(address: str) -> ScriptType:
    try:
        return script_type_from_address(address)
    except InvalidInputError:
        # Cost unknown outputs as legacy so fees are not underestimated
        return ScriptType.P2PKH


class BitcoinCoreBackend(BlockchainBackend):
    """Blockchain backend using Bitcoin Core JSON-RPC."""

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:18443",
        rpc_user: str = "rpcuser",
        rpc_password: str = "rpcpassword",
        network: NetworkType = NetworkType.REGTEST,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        scan_timeout: float = SCAN_RPC_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.network = NetworkType(network)
        self.scan_timeout = scan_timeout
        auth = (rpc_user, rpc_password)
        self.client = httpx.AsyncClient(timeout=timeout, auth=auth, transport=transport)
        # Separate client for long-running scans
        self._scan_client = httpx.AsyncClient(timeout=scan_timeout, auth=auth, transport=transport)
        self._request_id = 0

    async def _rpc_call(
        self,
        method: str,
        params: list | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> Any:
        """
        Make an RPC call to Bitcoin Core.

        Raises:
            RpcError: When the node answers with an error object
            httpx.HTTPError: On connection/timeout errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        use_client = client or self.client

        try:
            response = await use_client.post(self.rpc_url, json=payload)
            # Core answers RPC errors with HTTP 500 and a JSON error body
            if response.status_code != 500:
                response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"RPC call timed out: {method} - {e}")
            raise
        except httpx.HTTPError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise

        if data.get("error"):
            error_info = data["error"]
            raise RpcError(error_info.get("code", "unknown"), error_info.get("message", ""))

        return data.get("result")

    async def _oracle_call(self, method: str, params: list | None = None) -> Any:
        """_rpc_call with node and transport failures raised as OracleUnreachableError."""
        try:
            return await self._rpc_call(method, params)
        except RpcError as e:
            raise OracleUnreachableError(
                f"{method} failed: {e.rpc_message}", method=method, code=e.code
            ) from e
        except httpx.HTTPError as e:
            raise OracleUnreachableError(f"{method} failed: {e}", method=method) from e

    async def ping(self) -> bool:
        try:
            await self._rpc_call("getblockchaininfo")
            return True
        except (httpx.HTTPError, RpcError) as e:
            logger.debug(f"RPC ping failed: {e}")
            return False

    async def get_block_count(self) -> int:
        return await self._oracle_call("getblockcount")

    async def list_unspent(self, addresses: list[str], min_confirmations: int = 0) -> list[Utxo]:
        if not addresses:
            return []
        if SENSITIVE_LOGGING:
            logger.debug(f"listunspent for {addresses}")

        result = await self._rpc_call(
            "listunspent", [min_confirmations, MAX_CONFIRMATIONS, addresses]
        )
        return [
            Utxo(
                txid=entry["txid"],
                vout=entry["vout"],
                address=entry.get("address", ""),
                amount_sats=btc_to_sats(entry["amount"]),
                confirmations=entry.get("confirmations", 0),
                script_type=_infer_script_type(entry.get("address", "")),
                spendable=entry.get("spendable", True),
            )
            for entry in result or []
        ]

    async def _scantxoutset_with_retry(self, descriptors: list[str]) -> dict[str, Any] | None:
        for attempt in range(SCAN_MAX_RETRIES):
            try:
                logger.debug(f"Starting UTXO scan for {len(descriptors)} descriptor(s)...")
                return await self._rpc_call(
                    "scantxoutset", ["start", descriptors], client=self._scan_client
                )
            except RpcError as e:
                if e.code != RPC_INVALID_PARAMETER or "in progress" not in e.rpc_message:
                    logger.error(f"scantxoutset RPC error: {e}")
                    raise
                delay = SCAN_BASE_DELAY * (2**attempt) + random.uniform(0, 0.5)
                logger.debug(
                    f"Scan in progress, retrying in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{SCAN_MAX_RETRIES})"
                )
                await asyncio.sleep(delay)

        logger.warning(f"scantxoutset failed after {SCAN_MAX_RETRIES} attempts")
        return None

    async def scan_unspent(self, address: str) -> list[ScannedOutput]:
        result = await self._scantxoutset_with_retry([f"addr({address})"])
        if not result:
            return []

        unspents = result.get("unspents", [])
        logger.debug(f"Scan found {len(unspents)} UTXOs")
        return [
            ScannedOutput(
                txid=entry["txid"],
                vout=entry["vout"],
                amount_sats=btc_to_sats(entry["amount"]),
                height=entry.get("height") or None,
            )
            for entry in unspents
        ]

    async def get_raw_transaction(self, txid: str) -> PreviousTransaction | None:
        try:
            tx_data = await self._rpc_call("getrawtransaction", [txid, True])
        except RpcError as e:
            if e.code == RPC_NOT_FOUND:
                logger.warning(f"Transaction {txid} not found")
                return None
            raise OracleUnreachableError(
                f"Failed to fetch transaction {txid}: {e.rpc_message}", txid=txid, code=e.code
            ) from e
        except httpx.HTTPError as e:
            raise OracleUnreachableError(
                f"Failed to fetch transaction {txid}: {e}", txid=txid
            ) from e

        if not tx_data:
            return None

        try:
            vouts = sorted(tx_data.get("vout", []), key=lambda v: v["n"])
            return PreviousTransaction(
                txid=tx_data.get("txid", txid),
                raw=bytes.fromhex(tx_data["hex"]),
                outputs=tuple(
                    PreviousOutput(
                        value_sats=btc_to_sats(v["value"]),
                        script=bytes.fromhex(v["scriptPubKey"]["hex"]),
                    )
                    for v in vouts
                ),
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise MalformedPreviousTransactionError(
                f"Node returned an unusable transaction {txid}: {e}", txid=txid
            ) from e

    async def submit_raw_transaction(self, raw_hex: str) -> str:
        try:
            txid = await self._rpc_call("sendrawtransaction", [raw_hex])
        except RpcError as e:
            logger.error(f"Node rejected transaction: {e}")
            raise BroadcastError(f"Broadcast rejected: {e.rpc_message}", code=e.code) from e
        except httpx.HTTPError as e:
            raise OracleUnreachableError(f"Broadcast failed: {e}") from e

        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def estimate_fee_rate(self, target_blocks: int = 6) -> float | None:
        try:
            result = await self._rpc_call("estimatesmartfee", [target_blocks, "CONSERVATIVE"])
        except (httpx.HTTPError, RpcError) as e:
            logger.warning(f"Failed to estimate fee: {e}")
            return None

        feerate = (result or {}).get("feerate")
        if not feerate or feerate <= 0:
            logger.warning("Fee estimation unavailable")
            return None

        # BTC/kvB -> sat/vB
        sat_per_vbyte = max(1, round(feerate * 100_000_000 / 1000))
        logger.debug(f"Estimated fee for {target_blocks} blocks: {sat_per_vbyte} sat/vB")
        return float(sat_per_vbyte)

    async def import_addresses(self, addresses: list[str], rescan: bool = False) -> Any:
        """Import addresses as watch-only so listunspent can see them."""
        requests = [
            {
                "scriptPubKey": {"address": address},
                "timestamp": 0 if rescan else "now",
                "watchonly": True,
            }
            for address in addresses
        ]
        return await self._oracle_call("importmulti", [requests, {"rescan": rescan}])

    async def generate_to_address(self, address: str, blocks: int = 1) -> list[str]:
        if self.network != NetworkType.REGTEST:
            raise InvalidInputError("Mining is only available in regtest mode")
        return await self._oracle_call("generatetoaddress", [blocks, address])

    async def close(self) -> None:
        await self.client.aclose()
        await self._scan_client.aclose()
