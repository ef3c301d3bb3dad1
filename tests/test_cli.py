"""
Tests for the command line interface.
"""

from __future__ import annotations

import sys

import pytest
from loguru import logger
from typer.testing import CliRunner

from btcforge import cli
from btcforge.backends.memory import InMemoryBackend
from btcforge.models import ScriptType

TEST_PRIVATE_KEY = "0c28fca386c7a227600b2fe50b7cae11ec86d3bf1fbe471be89827e19d72aa1d"
GENERATOR_PRIVATE_KEY = "00" * 31 + "01"

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("BTCFORGE_PRIVATE_KEY", "MNEMONIC", "BTCFORGE_NETWORK", "BTCFORGE_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    yield
    # The CLI points loguru at the runner's stderr
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def cli_backend(monkeypatch, backend) -> InMemoryBackend:
    monkeypatch.setattr(cli, "_make_backend", lambda settings: backend)
    return backend


class TestDerive:
    """Key loading and address display."""

    def test_generator_key(self) -> None:
        result = runner.invoke(
            cli.app, ["derive", "--private-key", GENERATOR_PRIVATE_KEY, "--network", "mainnet"]
        )

        assert result.exit_code == 0
        assert (
            "Public key: 0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
            in result.stdout
        )
        assert "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4" in result.stdout
        assert "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH" in result.stdout

    def test_key_from_environment(self, monkeypatch, key) -> None:
        monkeypatch.setenv("BTCFORGE_PRIVATE_KEY", TEST_PRIVATE_KEY)

        result = runner.invoke(cli.app, ["derive"])

        assert result.exit_code == 0
        assert key.address_for(ScriptType.P2SH_P2WPKH) in result.stdout

    def test_mnemonic(self, sample_mnemonic) -> None:
        result = runner.invoke(cli.app, ["derive", "--mnemonic", sample_mnemonic])
        assert result.exit_code == 0
        assert "bcrt1q" in result.stdout

    def test_missing_key(self) -> None:
        result = runner.invoke(cli.app, ["derive"])
        assert result.exit_code == 1

    def test_invalid_key(self) -> None:
        result = runner.invoke(cli.app, ["derive", "-k", "zz"])
        assert result.exit_code == 1

    def test_invalid_network(self) -> None:
        result = runner.invoke(cli.app, ["derive", "-k", TEST_PRIVATE_KEY, "-n", "moon"])
        assert result.exit_code == 1


class TestWalletCommands:
    """Commands that talk to the blockchain backend."""

    def test_balance(self, cli_backend, key) -> None:
        cli_backend.fund(key.address_for(ScriptType.P2WPKH), 10_000)
        cli_backend.fund(key.address_for(ScriptType.P2PKH), 5_000)

        result = runner.invoke(cli.app, ["balance", "-k", TEST_PRIVATE_KEY])

        assert result.exit_code == 0
        assert "Total Balance: 15,000 sats" in result.stdout
        assert "UTXOs: 2" in result.stdout

    def test_balance_with_unreachable_backend(self, cli_backend) -> None:
        cli_backend.reachable = False

        result = runner.invoke(cli.app, ["balance", "-k", TEST_PRIVATE_KEY])

        assert result.exit_code == 0
        assert "unreachable" in result.stdout

    def test_select(self, cli_backend, key) -> None:
        cli_backend.fund(key.address_for(ScriptType.P2WPKH), 10_000)

        result = runner.invoke(
            cli.app, ["select", "--amount", "5000", "--fee-rate", "1", "-k", TEST_PRIVATE_KEY]
        )

        assert result.exit_code == 0
        assert "Script type: p2wpkh" in result.stdout
        assert "Fee:   140 sats" in result.stdout
        assert "Change: 4,860 sats" in result.stdout

    def test_select_insufficient(self, cli_backend, key) -> None:
        cli_backend.fund(key.address_for(ScriptType.P2WPKH), 1_000)

        result = runner.invoke(
            cli.app, ["select", "--amount", "5000", "--fee-rate", "1", "-k", TEST_PRIVATE_KEY]
        )

        assert result.exit_code == 1

    def test_send_dry_run(self, cli_backend, key, other_key) -> None:
        cli_backend.fund(key.address_for(ScriptType.P2WPKH), 10_000)
        destination = other_key.address_for(ScriptType.P2WPKH)

        result = runner.invoke(
            cli.app,
            [
                "send",
                destination,
                "-a",
                "5000",
                "--fee-rate",
                "1",
                "--dry-run",
                "-k",
                TEST_PRIVATE_KEY,
            ],
        )

        assert result.exit_code == 0
        assert "Status: not broadcast" in result.stdout
        assert cli_backend.broadcasts == []

    def test_send(self, cli_backend, key, other_key) -> None:
        cli_backend.fund(key.address_for(ScriptType.P2WPKH), 10_000)
        destination = other_key.address_for(ScriptType.P2WPKH)

        result = runner.invoke(
            cli.app, ["send", destination, "-a", "5000", "--fee-rate", "1", "-k", TEST_PRIVATE_KEY]
        )

        assert result.exit_code == 0
        assert "Status: broadcast" in result.stdout
        assert len(cli_backend.broadcasts) == 1
        assert cli_backend.broadcasts[0] in result.stdout

    def test_send_psbt(self, cli_backend, key, other_key) -> None:
        cli_backend.fund(key.address_for(ScriptType.P2WPKH), 10_000)
        destination = other_key.address_for(ScriptType.P2WPKH)

        result = runner.invoke(
            cli.app,
            [
                "send",
                destination,
                "-a",
                "5000",
                "--fee-rate",
                "1",
                "--psbt",
                "-k",
                TEST_PRIVATE_KEY,
            ],
        )

        assert result.exit_code == 0
        assert any(line.startswith("cHNidP8") for line in result.stdout.splitlines())
        assert cli_backend.broadcasts == []

    def test_send_rejects_bad_destination(self, cli_backend, key) -> None:
        cli_backend.fund(key.address_for(ScriptType.P2WPKH), 10_000)

        result = runner.invoke(
            cli.app, ["send", "not-an-address", "-a", "5000", "-k", TEST_PRIVATE_KEY]
        )

        assert result.exit_code == 1
        assert cli_backend.broadcasts == []


class TestEstimateFee:
    """Fee estimation with fallback."""

    def test_estimate(self, cli_backend) -> None:
        cli_backend.fee_rate = 7.0
        result = runner.invoke(cli.app, ["estimate-fee"])
        assert result.exit_code == 0
        assert "7.0 sat/vB" in result.stdout

    def test_fallback(self, cli_backend) -> None:
        cli_backend.fee_rate = None
        result = runner.invoke(cli.app, ["estimate-fee", "--target", "3"])
        assert result.exit_code == 0
        assert "2.0 sat/vB" in result.stdout
