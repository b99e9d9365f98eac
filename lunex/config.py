"""
Runtime configuration: network profiles, environment settings, logging and
the deployment configuration document.
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from dotenv import load_dotenv

from lunex.errors import ConfigError

# Load environment variables from .env file
load_dotenv()

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass(frozen=True)
class NetworkProfile:
    """Named RPC endpoint"""
    name: str
    rpc_url: str
    chain_id: Optional[int] = None
    poa: bool = False
    # None: rely on the node's "finalized" block tag; int: latest - depth
    finality_depth: Optional[int] = None
    explorer: Optional[str] = None

    def tx_url(self, tx_hash: str) -> Optional[str]:
        if not self.explorer:
            return None
        return f"{self.explorer.rstrip('/')}/tx/{tx_hash}"


NETWORKS: Dict[str, NetworkProfile] = {
    "local": NetworkProfile(
        name="local",
        rpc_url="http://localhost:8545",
        chain_id=31337,
        finality_depth=0,
    ),
    "testnet": NetworkProfile(
        name="testnet",
        rpc_url="https://rpc-test.lunes.io",
        poa=True,
        explorer="https://explorer-test.lunes.io",
    ),
    "mainnet": NetworkProfile(
        name="mainnet",
        rpc_url="https://rpc.lunes.io",
        poa=True,
        explorer="https://explorer.lunes.io",
    ),
}


def get_network(name: str) -> NetworkProfile:
    """Resolve a network name, applying LUNEX_<NAME>_RPC_URL / _CHAIN_ID overrides"""
    profile = NETWORKS.get(name)
    if profile is None:
        raise ConfigError(f"Unsupported network: {name}. Use one of {', '.join(sorted(NETWORKS))}")

    prefix = f"LUNEX_{name.upper()}"
    rpc_url = os.getenv(f"{prefix}_RPC_URL", profile.rpc_url)
    chain_id = os.getenv(f"{prefix}_CHAIN_ID")
    return NetworkProfile(
        name=profile.name,
        rpc_url=rpc_url,
        chain_id=int(chain_id) if chain_id else profile.chain_id,
        poa=profile.poa,
        finality_depth=profile.finality_depth,
        explorer=profile.explorer,
    )


@dataclass
class Settings:
    network: str = "testnet"
    signer: Optional[str] = None
    artifacts_dir: str = "artifacts"
    record_dir: str = "deployments"
    poll_interval: float = 2.0
    tx_timeout: float = 600.0
    min_deployer_balance: int = 0
    log_level: str = "INFO"
    log_file: Optional[str] = "lunex.log"

    # Notification settings
    slack_webhook: Optional[str] = None
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    notification_email: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            network=os.getenv("LUNEX_NETWORK", "testnet"),
            signer=os.getenv("LUNEX_SIGNER"),
            artifacts_dir=os.getenv("LUNEX_ARTIFACTS_DIR", "artifacts"),
            record_dir=os.getenv("LUNEX_RECORD_DIR", "deployments"),
            poll_interval=float(os.getenv("LUNEX_POLL_INTERVAL", "2")),
            tx_timeout=float(os.getenv("LUNEX_TX_TIMEOUT", "600")),
            min_deployer_balance=int(os.getenv("LUNEX_MIN_DEPLOYER_BALANCE", "0")),
            log_level=os.getenv("LUNEX_LOG_LEVEL", "INFO"),
            log_file=os.getenv("LUNEX_LOG_FILE", "lunex.log") or None,
            slack_webhook=os.getenv("SLACK_WEBHOOK"),
            smtp_server=os.getenv("SMTP_SERVER", "smtp.gmail.com"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_username=os.getenv("SMTP_USERNAME"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            notification_email=os.getenv("NOTIFICATION_EMAIL"),
        )

    def record_path(self, network: str) -> str:
        return os.path.join(self.record_dir, f"{network}.json")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure root logging the same way for every entry point"""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


@dataclass
class InitialToken:
    address: str
    reason: str


@dataclass
class DeploymentConfig:
    """Deployment configuration document"""
    network: str
    signer: Optional[str] = None
    treasury: Optional[str] = None
    contracts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    initial_tokens: List[InitialToken] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentConfig":
        if "network" not in data:
            raise ConfigError("Deployment config is missing 'network'")
        contracts = data.get("contracts", {})
        if not isinstance(contracts, dict):
            raise ConfigError("'contracts' must map contract names to settings")

        tokens = []
        for entry in data.get("initialTokens", []):
            try:
                tokens.append(InitialToken(address=entry["address"], reason=entry.get("reason", "")))
            except (KeyError, TypeError) as e:
                raise ConfigError(f"Invalid initialTokens entry {entry!r}: {e}") from e

        return cls(
            network=data["network"],
            signer=data.get("signer"),
            treasury=data.get("treasury"),
            contracts=contracts,
            initial_tokens=tokens,
        )

    @classmethod
    def load(cls, path: str) -> "DeploymentConfig":
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read deployment config {path}: {e}") from e
        return cls.from_dict(data)
