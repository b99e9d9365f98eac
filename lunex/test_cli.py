"""
Tests for the command line entry point
"""

import json
import pytest
from typer.testing import CliRunner

from lunex import __version__
from lunex.cli import _tx_link, app
from lunex.config import get_network

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch, tmp_path):
    monkeypatch.setenv("LUNEX_LOG_FILE", "")
    monkeypatch.setenv("LUNEX_RECORD_DIR", str(tmp_path))


class TestCli:
    """Test class for the lunex CLI"""

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_mainnet_deploy_needs_confirmation(self):
        result = runner.invoke(app, ["deploy", "mainnet", "env:DEPLOYER_KEY"], input="yes\n")
        assert result.exit_code == 1
        assert "MAINNET" in result.output
        assert "Deployment cancelled" in result.output

    def test_config_for_another_network(self, tmp_path):
        path = tmp_path / "deploy.json"
        path.write_text(json.dumps({"network": "testnet"}))
        result = runner.invoke(app, ["deploy", "mainnet", "env:DEPLOYER_KEY", "--config", str(path)])
        assert result.exit_code == 1
        assert "targets testnet" in result.output

    def test_unknown_contract_in_config(self, tmp_path):
        path = tmp_path / "deploy.json"
        path.write_text(json.dumps({"network": "local", "contracts": {"oracle": {}}}))
        result = runner.invoke(app, ["deploy", "local", "env:DEPLOYER_KEY", "--config", str(path)])
        assert result.exit_code == 1

    def test_verify_without_record(self):
        result = runner.invoke(app, ["verify", "local"])
        assert result.exit_code == 1
        assert "Could not read deployment record" in result.output

    def test_vote_requires_direction(self):
        result = runner.invoke(app, ["vote", "3"])
        assert result.exit_code != 0

    def test_transaction_links(self):
        assert _tx_link(get_network("mainnet"), "0xabc") == "https://explorer.lunes.io/tx/0xabc"
        assert _tx_link(get_network("local"), "0xabc") == "0xabc"
