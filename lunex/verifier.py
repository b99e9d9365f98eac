"""
Post-deployment verification.

Five independent read-only checks run concurrently and are aggregated into
one ``VerificationReport``: existence, configuration, integration links,
pause state and a smoke read. A failing item never stops the others; the
report is meant to show every problem in a single pass. Paused contracts are
warnings only.
"""

import asyncio
import json
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd
from web3 import Web3

from lunex.contracts import catalogue
from lunex.contracts.catalogue import IntegrationLink
from lunex.contracts.interface import ContractInterface
from lunex.errors import ConfigError
from lunex.record import DeploymentRecord

logger = logging.getLogger(__name__)

REFERENCE = re.compile(r"^\$\{([A-Za-z0-9_\-]+)\}$")


def values_match(expected: Any, actual: Any) -> bool:
    """Addresses compare case-insensitively, integers numerically"""
    if isinstance(expected, str) and isinstance(actual, str) and Web3.is_address(expected):
        return expected.lower() == actual.lower()
    if isinstance(expected, bool) or isinstance(actual, bool):
        return expected is actual
    if isinstance(expected, (int, str)) and isinstance(actual, (int, str)):
        try:
            return int(expected) == int(actual)
        except ValueError:
            pass
    return expected == actual


@dataclass
class ExistenceCheck:
    contract: str
    address: Optional[str]
    exists: bool
    error: Optional[str] = None


@dataclass
class ConfigCheck:
    contract: str
    key: str
    expected: Any
    actual: Any = None
    match: bool = False
    error: Optional[str] = None


@dataclass
class VerificationMismatch:
    contract: str
    key: str
    expected: Any
    actual: Any
    error: Optional[str] = None


@dataclass
class LinkCheck:
    contract: str
    key: str
    target: str
    expected: Optional[str] = None
    actual: Any = None
    match: bool = False
    error: Optional[str] = None


@dataclass
class PauseCheck:
    contract: str
    paused: Optional[bool] = None
    error: Optional[str] = None


@dataclass
class SmokeCheck:
    contract: str
    method: str
    ok: bool = False
    value: Any = None
    error: Optional[str] = None


@dataclass
class VerificationReport:
    network: str
    existence: List[ExistenceCheck] = field(default_factory=list)
    configuration: List[ConfigCheck] = field(default_factory=list)
    integration_links: List[LinkCheck] = field(default_factory=list)
    pause: List[PauseCheck] = field(default_factory=list)
    smoke: List[SmokeCheck] = field(default_factory=list)

    @property
    def mismatches(self) -> List[VerificationMismatch]:
        return [
            VerificationMismatch(c.contract, c.key, c.expected, c.actual, c.error)
            for c in self.configuration if not c.match
        ]

    @property
    def warnings(self) -> List[str]:
        warnings = []
        for check in self.pause:
            if check.error:
                warnings.append(f"{check.contract}: pause state unavailable ({check.error})")
            elif check.paused:
                warnings.append(f"{check.contract} is paused - this may be intentional")
        return warnings

    @property
    def overall_pass(self) -> bool:
        return (
            all(c.exists for c in self.existence)
            and all(c.match for c in self.configuration)
            and all(c.match for c in self.integration_links)
            and all(c.ok for c in self.smoke)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network": self.network,
            "overallPass": self.overall_pass,
            "existence": [asdict(c) for c in self.existence],
            "configuration": [asdict(c) for c in self.configuration],
            "integrationLinks": [asdict(c) for c in self.integration_links],
            "pause": [asdict(c) for c in self.pause],
            "smoke": [asdict(c) for c in self.smoke],
            "mismatches": [asdict(m) for m in self.mismatches],
            "warnings": self.warnings,
        }

    def to_frame(self) -> pd.DataFrame:
        """One row per check item, for tabular display or CSV export"""
        rows = []
        for c in self.existence:
            rows.append(("existence", c.contract, "code", "deployed", c.address, c.exists, "error", c.error))
        for c in self.configuration:
            rows.append(("configuration", c.contract, c.key, c.expected, c.actual, c.match, "error", c.error))
        for c in self.integration_links:
            rows.append(("integration", c.contract, c.key, c.expected, c.actual, c.match, "error", c.error))
        for c in self.pause:
            rows.append(("pause", c.contract, "paused", False, c.paused, not c.paused and not c.error,
                         "warning", c.error))
        for c in self.smoke:
            rows.append(("smoke", c.contract, c.method, None, c.value, c.ok, "error", c.error))
        frame = pd.DataFrame(
            rows, columns=["check", "contract", "key", "expected", "actual", "passed", "severity", "detail"]
        )
        return frame.astype({"expected": str, "actual": str})


@dataclass
class ExpectedConfig:
    """What a correct deployment looks like"""
    values: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    addresses: Dict[str, str] = field(default_factory=dict)
    links: List[IntegrationLink] = field(default_factory=lambda: list(catalogue.INTEGRATION_LINKS))
    pause: Dict[str, str] = field(default_factory=lambda: dict(catalogue.PAUSE_QUERIES))
    smoke: Dict[str, str] = field(default_factory=lambda: dict(catalogue.SMOKE_QUERIES))

    @classmethod
    def defaults(cls, deployer: str, treasury: Optional[str] = None) -> "ExpectedConfig":
        return cls(values=catalogue.default_expectations(deployer, treasury))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExpectedConfig":
        contracts = data.get("contracts")
        if not isinstance(contracts, dict):
            raise ConfigError("Verification config needs a 'contracts' mapping")
        config = cls()
        for name, entry in contracts.items():
            if entry.get("address"):
                config.addresses[name] = entry["address"]
            if entry.get("expected"):
                config.values[name] = dict(entry["expected"])
        if "links" in data:
            try:
                config.links = [IntegrationLink(l["contract"], l["key"], l["target"]) for l in data["links"]]
            except (KeyError, TypeError) as e:
                raise ConfigError(f"Invalid 'links' entry: {e}") from e
        if "pause" in data:
            config.pause = dict(data["pause"])
        if "smoke" in data:
            config.smoke = dict(data["smoke"])
        return config

    @classmethod
    def load(cls, path: str) -> "ExpectedConfig":
        try:
            with open(path, 'r') as f:
                return cls.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read verification config {path}: {e}") from e


class DeploymentVerifier:
    def __init__(self, chain, interfaces: Dict[str, ContractInterface]):
        self.chain = chain
        self.interfaces = interfaces

    async def verify_all(self, record: DeploymentRecord, expected: ExpectedConfig) -> VerificationReport:
        addresses = {**record.addresses(), **expected.addresses}
        logger.info(f"Verifying {len(addresses)} contracts on {record.network}")

        existence, configuration, links, pause, smoke = await asyncio.gather(
            self.check_existence(addresses, expected.values),
            self.check_configuration(addresses, expected.values),
            self.check_integration_links(addresses, expected.links),
            self.check_pause(addresses, expected.pause),
            self.check_smoke(addresses, expected.smoke),
        )
        report = VerificationReport(record.network, existence, configuration, links, pause, smoke)
        self._log_report(report)
        return report

    async def _query(self, contract: str, address: str, method: str) -> Any:
        interface = self.interfaces.get(contract)
        if interface is None:
            raise ConfigError(f"No interface loaded for {contract}")
        return await self.chain.query(interface, address, method)

    async def check_existence(self, addresses: Dict[str, str],
                              values: Optional[Dict[str, Any]] = None) -> List[ExistenceCheck]:
        async def check(name: str, address: Optional[str]) -> ExistenceCheck:
            if address is None:
                return ExistenceCheck(name, None, False, "no address in record or config")
            try:
                code = await self.chain.code_at(address)
            except Exception as e:  # recorded in the report
                return ExistenceCheck(name, address, False, str(e))
            if not code:
                return ExistenceCheck(name, address, False, "no code at address")
            return ExistenceCheck(name, address, True)

        names = list(addresses) + [n for n in (values or {}) if n not in addresses]
        return list(await asyncio.gather(*(check(n, addresses.get(n)) for n in names)))

    def _resolve(self, value: Any, addresses: Dict[str, str]) -> Any:
        match = REFERENCE.match(value) if isinstance(value, str) else None
        if match is None:
            return value
        name = match.group(1)
        if name not in addresses:
            raise ConfigError(f"unresolved reference ${{{name}}}")
        return addresses[name]

    async def check_configuration(self, addresses: Dict[str, str],
                                  values: Dict[str, Dict[str, Any]]) -> List[ConfigCheck]:
        async def check(name: str, key: str, raw_expected: Any) -> ConfigCheck:
            result = ConfigCheck(name, key, raw_expected)
            try:
                result.expected = self._resolve(raw_expected, addresses)
                if name not in addresses:
                    raise ConfigError(f"no address for {name}")
                result.actual = await self._query(name, addresses[name], key)
            except Exception as e:  # recorded in the report
                result.error = str(e)
                return result
            result.match = values_match(result.expected, result.actual)
            return result

        jobs = [check(name, key, value) for name, keys in values.items() for key, value in keys.items()]
        return list(await asyncio.gather(*jobs))

    async def check_integration_links(self, addresses: Dict[str, str],
                                      links: List[IntegrationLink]) -> List[LinkCheck]:
        async def check(link: IntegrationLink) -> LinkCheck:
            result = LinkCheck(link.contract, link.key, link.target, expected=addresses.get(link.target))
            if link.contract not in addresses or result.expected is None:
                result.error = "contract or target not deployed"
                return result
            try:
                result.actual = await self._query(link.contract, addresses[link.contract], link.key)
            except Exception as e:  # recorded in the report
                result.error = str(e)
                return result
            result.match = values_match(result.expected, result.actual)
            return result

        relevant = [link for link in links if link.contract in addresses or link.target in addresses]
        return list(await asyncio.gather(*(check(link) for link in relevant)))

    async def check_pause(self, addresses: Dict[str, str], queries: Dict[str, str]) -> List[PauseCheck]:
        async def check(name: str, method: str) -> PauseCheck:
            try:
                return PauseCheck(name, paused=bool(await self._query(name, addresses[name], method)))
            except Exception as e:  # recorded in the report
                return PauseCheck(name, error=str(e))

        return list(await asyncio.gather(*(check(n, m) for n, m in queries.items() if n in addresses)))

    async def check_smoke(self, addresses: Dict[str, str], queries: Dict[str, str]) -> List[SmokeCheck]:
        async def check(name: str, method: str) -> SmokeCheck:
            try:
                return SmokeCheck(name, method, ok=True, value=await self._query(name, addresses[name], method))
            except Exception as e:  # recorded in the report
                return SmokeCheck(name, method, error=str(e))

        return list(await asyncio.gather(*(check(n, m) for n, m in queries.items() if n in addresses)))

    def _log_report(self, report: VerificationReport):
        for check in report.existence:
            if check.exists:
                logger.info(f"{check.contract}: code found at {check.address}")
            else:
                logger.error(f"{check.contract}: {check.error} ({check.address})")
        for mismatch in report.mismatches:
            logger.error(
                f"{mismatch.contract}.{mismatch.key}: expected {mismatch.expected}, got {mismatch.actual}"
                + (f" ({mismatch.error})" if mismatch.error else "")
            )
        for link in report.integration_links:
            if not link.match:
                logger.error(f"{link.contract}.{link.key} does not point at {link.target}: {link.actual or link.error}")
        for warning in report.warnings:
            logger.warning(warning)
        for smoke in report.smoke:
            if not smoke.ok:
                logger.error(f"{smoke.contract}.{smoke.method}() failed: {smoke.error}")

        if report.overall_pass:
            logger.info("All contracts verified successfully")
        else:
            logger.error("Verification found problems; see the report")
