"""
btcforge CLI - derive addresses, inspect balances, select coins and send.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any

import typer
from loguru import logger
from pydantic import ValidationError

from btcforge.backends.base import BlockchainBackend
from btcforge.backends.bitcoin_core import BitcoinCoreBackend
from btcforge.config import Settings, get_settings
from btcforge.errors import TransactionBuildError
from btcforge.models import NetworkType, sats_to_btc
from btcforge.pipeline import TransactionPipeline
from btcforge.wallet.keys import KeyMaterial

app = typer.Typer(
    name="btcforge",
    help="Build, sign and broadcast single-key Bitcoin transactions",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "{extra[request_id]} | {message}",
    )
    logger.configure(extra={"request_id": "-"})


def _load_settings(network: str | None, rpc_url: str | None, log_level: str | None) -> Settings:
    settings = get_settings()
    overrides: dict[str, Any] = {}
    if network:
        overrides["network"] = network
    if rpc_url:
        overrides["rpc_url"] = rpc_url
    if log_level:
        overrides["log_level"] = log_level
    if overrides:
        try:
            settings = Settings(**{**settings.model_dump(), **overrides})
        except ValidationError as e:
            logger.error(f"Invalid settings: {e}")
            raise typer.Exit(1) from e
    setup_logging(settings.log_level)
    return settings


def _load_key(private_key: str | None, mnemonic: str | None, network: str) -> KeyMaterial:
    try:
        if private_key:
            return KeyMaterial.from_private_key_hex(private_key, NetworkType(network))
        if mnemonic:
            return KeyMaterial.from_mnemonic(mnemonic, network=NetworkType(network))
    except TransactionBuildError as e:
        logger.error(e.message)
        raise typer.Exit(1) from e
    logger.error("Key required. Use --private-key, --mnemonic, or the BTCFORGE_PRIVATE_KEY env var")
    raise typer.Exit(1)


def _make_backend(settings: Settings) -> BlockchainBackend:
    return BitcoinCoreBackend(
        rpc_url=settings.rpc_url,
        rpc_user=settings.rpc_user,
        rpc_password=settings.rpc_password,
        network=NetworkType(settings.network),
        timeout=settings.rpc_timeout,
    )


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except TransactionBuildError as e:
        logger.error(f"{e.kind.value}: {e.message}")
        raise typer.Exit(1) from e


PRIVATE_KEY_OPTION = typer.Option(
    None, "--private-key", "-k", envvar="BTCFORGE_PRIVATE_KEY", help="Hex private key"
)
MNEMONIC_OPTION = typer.Option(None, "--mnemonic", envvar="MNEMONIC", help="BIP39 mnemonic")
NETWORK_OPTION = typer.Option(None, "--network", "-n", help="Bitcoin network")
RPC_URL_OPTION = typer.Option(None, "--rpc-url", help="Bitcoin Core RPC URL")
LOG_LEVEL_OPTION = typer.Option(None, "--log-level", "-l")


@app.command()
def derive(
    private_key: str = PRIVATE_KEY_OPTION,
    mnemonic: str = MNEMONIC_OPTION,
    network: str = NETWORK_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Show the public key and the address of every supported type."""
    settings = _load_settings(network, None, log_level)
    key = _load_key(private_key, mnemonic, settings.network)

    print(f"Public key: {key.public_key_hex}")
    for script_type, address in key.addresses.items():
        print(f"  {script_type.value:<12} {address}")


@app.command()
def balance(
    private_key: str = PRIVATE_KEY_OPTION,
    mnemonic: str = MNEMONIC_OPTION,
    network: str = NETWORK_OPTION,
    rpc_url: str = RPC_URL_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Display balances by address type."""
    settings = _load_settings(network, rpc_url, log_level)
    key = _load_key(private_key, mnemonic, settings.network)
    _run(_show_balance(settings, key))


async def _show_balance(settings: Settings, key: KeyMaterial) -> None:
    backend = _make_backend(settings)
    pipeline = TransactionPipeline(backend, key, settings)
    try:
        info = await pipeline.collector.balance(key)
    finally:
        await backend.close()

    if info["degraded"]:
        print("Warning: blockchain backend unreachable, balances unavailable")
    total = info["total_sats"]
    print(f"\nTotal Balance: {total:,} sats ({sats_to_btc(total):.8f} BTC)")
    print(f"UTXOs: {info['utxo_count']}")
    print("\nBalance by type:")
    for script_type, address in info["addresses"].items():
        amount = info["by_type"].get(script_type, 0)
        print(f"  {script_type:<12} {amount:>15,} sats  |  {address}")


@app.command()
def select(
    amount: int = typer.Option(..., "--amount", "-a", help="Amount in sats"),
    fee_rate: float = typer.Option(None, "--fee-rate", help="sat/vB, estimated when omitted"),
    private_key: str = PRIVATE_KEY_OPTION,
    mnemonic: str = MNEMONIC_OPTION,
    network: str = NETWORK_OPTION,
    rpc_url: str = RPC_URL_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Show which UTXOs would fund a payment, without building it."""
    settings = _load_settings(network, rpc_url, log_level)
    if amount <= 0 or (fee_rate is not None and fee_rate <= 0):
        logger.error("Amount and fee rate must be positive")
        raise typer.Exit(1)
    key = _load_key(private_key, mnemonic, settings.network)
    _run(_show_selection(settings, key, amount, fee_rate))


async def _show_selection(
    settings: Settings, key: KeyMaterial, amount: int, fee_rate: float | None
) -> None:
    backend = _make_backend(settings)
    pipeline = TransactionPipeline(backend, key, settings)
    try:
        rate = fee_rate or await pipeline.estimate_fee_rate()
        collection = await pipeline.collect()
        selection = pipeline.select(collection.total_utxos, amount, rate)
    finally:
        await backend.close()

    print(f"Script type: {getattr(selection.script_type, 'value', selection.script_type)}")
    for utxo in selection.selected:
        print(f"  {utxo.outpoint}  {utxo.amount_sats:>12,} sats  ({utxo.script_type.value})")
    print(f"Total: {selection.total_input_sats:,} sats")
    print(f"Fee:   {selection.fee_sats:,} sats at {rate} sat/vB")
    print(f"Change: {selection.change_sats:,} sats")
    if selection.dropped_dust_sats:
        print(f"Dust folded into fee: {selection.dropped_dust_sats:,} sats")


@app.command()
def send(
    destination: str = typer.Argument(..., help="Destination address"),
    amount: int = typer.Option(..., "--amount", "-a", help="Amount in sats"),
    fee_rate: float = typer.Option(None, "--fee-rate", help="sat/vB, estimated when omitted"),
    change_address: str = typer.Option(None, "--change-address", help="Defaults to own P2WPKH"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Build and sign but do not broadcast"),
    psbt_only: bool = typer.Option(False, "--psbt", help="Print an unsigned PSBT instead"),
    private_key: str = PRIVATE_KEY_OPTION,
    mnemonic: str = MNEMONIC_OPTION,
    network: str = NETWORK_OPTION,
    rpc_url: str = RPC_URL_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Pay amount sats to destination."""
    settings = _load_settings(network, rpc_url, log_level)
    key = _load_key(private_key, mnemonic, settings.network)
    backend = _make_backend(settings)
    pipeline = TransactionPipeline(backend, key, settings)
    _run(_send(pipeline, destination, amount, fee_rate, change_address, dry_run, psbt_only))


async def _send(
    pipeline: TransactionPipeline,
    destination: str,
    amount: int,
    fee_rate: float | None,
    change_address: str | None,
    dry_run: bool,
    psbt_only: bool,
) -> None:
    try:
        if psbt_only:
            print(await pipeline.build_unsigned(destination, amount, fee_rate, change_address))
            return
        if dry_run:
            record = await pipeline.build(destination, amount, fee_rate, change_address)
        else:
            record = await pipeline.send(destination, amount, fee_rate, change_address)
    finally:
        await pipeline.backend.close()

    print(f"TxID:   {record.txid}")
    print(
        f"Size:   {record.size_bytes} bytes, {record.vsize_vbytes} vbytes, "
        f"{record.weight_units} WU"
    )
    print(f"Status: {'not broadcast' if dry_run else 'broadcast'}")
    print(record.raw_hex)


@app.command("estimate-fee")
def estimate_fee(
    target_blocks: int = typer.Option(None, "--target", "-t", help="Confirmation target"),
    network: str = NETWORK_OPTION,
    rpc_url: str = RPC_URL_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Estimate a fee rate, falling back to the configured rate."""
    settings = _load_settings(network, rpc_url, log_level)
    rate = _run(_estimate_fee(settings, target_blocks))
    print(f"{rate} sat/vB")


async def _estimate_fee(settings: Settings, target_blocks: int | None) -> float:
    backend = _make_backend(settings)
    try:
        rate = await backend.estimate_fee_rate(target_blocks or settings.fee_target_blocks)
    finally:
        await backend.close()
    if rate is None:
        logger.warning(f"Fee estimation unavailable, using fallback {settings.fee_fallback} sat/vB")
        return settings.fee_fallback
    return rate


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
