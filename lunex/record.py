"""
Deployment record: the checkpoint of a (possibly partial) rollout.

The record only grows. A finalized entry is never rewritten, which is what
makes re-running a deployment against the same record a safe resume. A
pending entry keeps the transaction id of an instantiation whose outcome was
not observed, so the next run can reconcile it against the chain first.
"""

import os
import json
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from lunex.errors import ConfigError, RecordError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeployedContract:
    name: str
    address: Optional[str]
    transaction_id: str
    block_number: Optional[int] = None
    finalized: bool = False

    def __post_init__(self):
        if self.finalized and not self.address:
            raise RecordError(f"{self.name}: a finalized entry needs an address")
        if not self.finalized and self.address:
            raise RecordError(f"{self.name}: address is only known once the instantiation is finalized")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "txHash": self.transaction_id,
            "deployBlock": self.block_number,
            "finalized": self.finalized,
        }

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "DeployedContract":
        try:
            return cls(
                name=name,
                address=data.get("address"),
                transaction_id=data["txHash"],
                block_number=data.get("deployBlock"),
                # Records written before the flag existed only held finalized entries
                finalized=data.get("finalized", data.get("address") is not None),
            )
        except KeyError as e:
            raise ConfigError(f"Record entry {name} is missing {e}") from e


class DeploymentRecord:
    def __init__(self, network: str, deployed_by: Optional[str] = None, path: Optional[str] = None,
                 treasury: Optional[str] = None):
        self.network = network
        self.deployed_by = deployed_by
        self.treasury = treasury
        self.path = path
        self.updated_at: Optional[str] = None
        self._entries: Dict[str, DeployedContract] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[DeployedContract]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, name: str) -> Optional[DeployedContract]:
        return self._entries.get(name)

    def is_finalized(self, name: str) -> bool:
        entry = self._entries.get(name)
        return entry is not None and entry.finalized

    def pending(self, name: str) -> Optional[DeployedContract]:
        entry = self._entries.get(name)
        if entry is not None and not entry.finalized:
            return entry
        return None

    def address_of(self, name: str) -> str:
        entry = self._entries.get(name)
        if entry is None or not entry.finalized:
            raise RecordError(f"{name} has no finalized deployment in the {self.network} record")
        return entry.address

    def addresses(self) -> Dict[str, str]:
        return {entry.name: entry.address for entry in self if entry.finalized}

    def add(self, entry: DeployedContract):
        current = self._entries.get(entry.name)
        if current is not None and current.finalized:
            if current == entry:
                return
            raise RecordError(f"{entry.name} is already finalized at {current.address}")
        self._entries[entry.name] = entry
        self.updated_at = datetime.now(timezone.utc).isoformat()
        logger.info(f"Record {self.network}: {entry.name} -> {entry.address or 'pending'} (tx {entry.transaction_id})")

    def discard_pending(self, name: str):
        if self.is_finalized(name):
            raise RecordError(f"{name} is finalized and cannot be discarded")
        self._entries.pop(name, None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network": self.network,
            "timestamp": self.updated_at,
            "deployedBy": self.deployed_by,
            "roles": {"deployer": self.deployed_by, "treasury": self.treasury},
            "contracts": {entry.name: entry.to_dict() for entry in self},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: Optional[str] = None) -> "DeploymentRecord":
        if "network" not in data:
            raise ConfigError("Deployment record is missing 'network'")
        roles = data.get("roles") or {}
        record = cls(data["network"], data.get("deployedBy"), path, treasury=roles.get("treasury"))
        for name, entry in data.get("contracts", {}).items():
            record._entries[name] = DeployedContract.from_dict(name, entry)
        record.updated_at = data.get("timestamp")
        return record

    @classmethod
    def load(cls, path: str) -> "DeploymentRecord":
        try:
            with open(path, 'r') as f:
                return cls.from_dict(json.load(f), path)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read deployment record {path}: {e}") from e

    @classmethod
    def load_or_create(cls, path: str, network: str, deployed_by: Optional[str] = None) -> "DeploymentRecord":
        if os.path.exists(path):
            record = cls.load(path)
            if record.network != network:
                raise ConfigError(f"{path} belongs to {record.network}, not {network}")
            return record
        return cls(network, deployed_by, path)

    def save(self, path: Optional[str] = None):
        """Write atomically so a crash never leaves a truncated checkpoint"""
        path = path or self.path
        if path is None:
            return
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(self.to_dict(), f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        self.path = path
        logger.info(f"Deployment record saved to {path}")
