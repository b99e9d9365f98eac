"""
Typed contract interface descriptors.

A ``ContractInterface`` is built once from a compiled artifact and validated
at load time. Methods are split by capability: ``QueryMethod`` (view/pure,
read through ``eth_call``) and ``TransactMethod`` (state-changing, sent as a
signed transaction). Call sites obtain checked ``ContractCall`` payloads, so
a wrong method name, capability or argument shape fails before anything
touches the network.
"""

import os
import json
import glob
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple
from web3 import Web3

from lunex.errors import ContractInterfaceError


@dataclass(frozen=True)
class Param:
    name: str
    type: str
    components: Tuple["Param", ...] = ()

    @classmethod
    def from_abi(cls, entry: Dict[str, Any]) -> "Param":
        return cls(
            name=entry.get("name", ""),
            type=entry["type"],
            components=tuple(cls.from_abi(c) for c in entry.get("components", [])),
        )


def _matches(param_type: str, components: Sequence[Param], value: Any) -> bool:
    """Check a Python value against a Solidity ABI type"""
    if param_type.endswith("]"):
        base = param_type[:param_type.rindex("[")]
        size = param_type[param_type.rindex("[") + 1:-1]
        if not isinstance(value, (list, tuple)):
            return False
        if size and len(value) != int(size):
            return False
        return all(_matches(base, components, item) for item in value)
    if param_type == "tuple":
        if isinstance(value, dict):
            value = [value.get(c.name) for c in components]
        if not isinstance(value, (list, tuple)) or len(value) != len(components):
            return False
        return all(_matches(c.type, c.components, v) for c, v in zip(components, value))
    if param_type == "address":
        return isinstance(value, str) and Web3.is_address(value)
    if param_type.startswith("uint"):
        return isinstance(value, int) and not isinstance(value, bool) and value >= 0
    if param_type.startswith("int"):
        return isinstance(value, int) and not isinstance(value, bool)
    if param_type == "bool":
        return isinstance(value, bool)
    if param_type == "string":
        return isinstance(value, str)
    if param_type.startswith("bytes"):
        return isinstance(value, (bytes, bytearray)) or (isinstance(value, str) and value.startswith("0x"))
    return True


def _normalize(param_type: str, components: Sequence[Param], value: Any) -> Any:
    """Checksum every address inside an already checked value; web3 rejects any other form"""
    if param_type.endswith("]"):
        base = param_type[:param_type.rindex("[")]
        return type(value)(_normalize(base, components, item) for item in value)
    if param_type == "tuple":
        if isinstance(value, dict):
            return {c.name: _normalize(c.type, c.components, value.get(c.name)) for c in components}
        return type(value)(_normalize(c.type, c.components, v) for c, v in zip(components, value))
    if param_type == "address":
        return Web3.to_checksum_address(value)
    return value


@dataclass(frozen=True)
class MethodDescriptor:
    contract: str
    name: str
    inputs: Tuple[Param, ...] = ()
    outputs: Tuple[Param, ...] = ()

    capability = "method"

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.type for p in self.inputs)})"

    def check_args(self, args: Sequence[Any]):
        if len(args) != len(self.inputs):
            raise ContractInterfaceError(
                f"{self.contract}.{self.signature} takes {len(self.inputs)} argument(s), got {len(args)}"
            )
        for position, (param, value) in enumerate(zip(self.inputs, args)):
            if not _matches(param.type, param.components, value):
                label = param.name or f"#{position}"
                raise ContractInterfaceError(
                    f"{self.contract}.{self.name}: argument {label} expects {param.type}, got {value!r}"
                )

    def normalize_args(self, args: Sequence[Any]) -> Tuple[Any, ...]:
        self.check_args(args)
        return tuple(_normalize(p.type, p.components, v) for p, v in zip(self.inputs, args))


@dataclass(frozen=True)
class QueryMethod(MethodDescriptor):
    capability = "query"


@dataclass(frozen=True)
class TransactMethod(MethodDescriptor):
    payable: bool = False

    capability = "transact"


@dataclass(frozen=True)
class ContractCall:
    """A checked call (or deployment when ``method`` is None) against an interface"""
    interface: "ContractInterface"
    method: Optional[str]
    args: Tuple[Any, ...] = ()
    address: Optional[str] = None

    @property
    def is_deployment(self) -> bool:
        return self.method is None

    def describe(self) -> str:
        return f"{self.interface.name}.{self.method or 'constructor'}"


def _decode(params: Sequence[Param], value: Any) -> Any:
    if len(params) == 1:
        param = params[0]
        if param.type == "tuple" and param.components:
            return _decode(param.components, value)
        if param.type == "tuple[]" and param.components:
            return [_decode(param.components, item) for item in value]
        if not isinstance(value, (list, tuple)) or param.type.endswith("]"):
            return value
    if not all(p.name for p in params):
        return value
    return {
        p.name: _decode((p,), v) if p.type.startswith("tuple") else v
        for p, v in zip(params, value)
    }


@dataclass(frozen=True)
class ContractInterface:
    name: str
    abi: Tuple[Dict[str, Any], ...]
    bytecode: str = "0x"
    constructor: Optional[TransactMethod] = None
    queries: Dict[str, QueryMethod] = field(default_factory=dict)
    transacts: Dict[str, TransactMethod] = field(default_factory=dict)
    events: FrozenSet[str] = frozenset()

    @classmethod
    def from_abi(cls, name: str, abi: List[Dict[str, Any]], bytecode: str = "0x") -> "ContractInterface":
        if not isinstance(abi, list):
            raise ContractInterfaceError(f"{name}: ABI must be a list")
        if not isinstance(bytecode, str) or not bytecode.startswith("0x"):
            raise ContractInterfaceError(f"{name}: bytecode must be a 0x-prefixed hex string")
        try:
            bytes.fromhex(bytecode[2:])
        except ValueError as e:
            raise ContractInterfaceError(f"{name}: bytecode is not valid hex") from e

        constructor = None
        queries: Dict[str, QueryMethod] = {}
        transacts: Dict[str, TransactMethod] = {}
        events = set()

        for entry in abi:
            kind = entry.get("type", "function")
            try:
                if kind == "constructor":
                    constructor = TransactMethod(
                        contract=name,
                        name="constructor",
                        inputs=tuple(Param.from_abi(p) for p in entry.get("inputs", [])),
                        payable=entry.get("stateMutability") == "payable",
                    )
                elif kind == "event":
                    events.add(entry["name"])
                elif kind == "function":
                    inputs = tuple(Param.from_abi(p) for p in entry.get("inputs", []))
                    outputs = tuple(Param.from_abi(p) for p in entry.get("outputs", []))
                    mutability = entry.get("stateMutability", "nonpayable")
                    method_name = entry["name"]
                    if method_name in queries or method_name in transacts:
                        raise ContractInterfaceError(f"{name}: overloaded method {method_name} is not supported")
                    if mutability in ("view", "pure"):
                        queries[method_name] = QueryMethod(name, method_name, inputs, outputs)
                    else:
                        transacts[method_name] = TransactMethod(
                            name, method_name, inputs, outputs, payable=mutability == "payable"
                        )
            except KeyError as e:
                raise ContractInterfaceError(f"{name}: malformed ABI entry {entry!r}") from e

        return cls(
            name=name,
            abi=tuple(abi),
            bytecode=bytecode,
            constructor=constructor,
            queries=queries,
            transacts=transacts,
            events=frozenset(events),
        )

    @classmethod
    def from_artifact(cls, path: str, name: Optional[str] = None) -> "ContractInterface":
        """Load a Hardhat-style artifact: {"contractName", "abi", "bytecode"}"""
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ContractInterfaceError(f"Could not read artifact {path}: {e}") from e
        if "abi" not in data:
            raise ContractInterfaceError(f"Artifact {path} has no 'abi'")
        bytecode = data.get("bytecode") or "0x"
        if isinstance(bytecode, dict):
            bytecode = bytecode.get("object", "0x")
        if not bytecode.startswith("0x"):
            bytecode = "0x" + bytecode
        return cls.from_abi(name or data.get("contractName", os.path.basename(path)), data["abi"], bytecode)

    @property
    def code_size(self) -> int:
        return max(len(self.bytecode) - 2, 0) // 2

    def query(self, method: str) -> QueryMethod:
        if method in self.queries:
            return self.queries[method]
        if method in self.transacts:
            raise ContractInterfaceError(f"{self.name}.{method} changes state and cannot be queried")
        raise ContractInterfaceError(f"{self.name} has no method {method}")

    def transact(self, method: str) -> TransactMethod:
        if method in self.transacts:
            return self.transacts[method]
        if method in self.queries:
            raise ContractInterfaceError(f"{self.name}.{method} is read-only and cannot be sent")
        raise ContractInterfaceError(f"{self.name} has no method {method}")

    def method(self, method: str) -> MethodDescriptor:
        if method in self.queries:
            return self.queries[method]
        return self.transact(method)

    def has_method(self, method: str) -> bool:
        return method in self.queries or method in self.transacts

    def call(self, method: str, *args: Any, address: Optional[str] = None) -> ContractCall:
        args = self.method(method).normalize_args(args)
        if address is not None:
            if not Web3.is_address(address):
                raise ContractInterfaceError(f"{self.name}.{method}: target {address!r} is not an address")
            address = Web3.to_checksum_address(address)
        return ContractCall(interface=self, method=method, args=args, address=address)

    def deploy(self, *args: Any) -> ContractCall:
        if self.code_size == 0:
            raise ContractInterfaceError(f"{self.name} artifact carries no bytecode")
        if self.constructor is not None:
            args = self.constructor.normalize_args(args)
        elif args:
            raise ContractInterfaceError(f"{self.name} has no constructor arguments")
        return ContractCall(interface=self, method=None, args=tuple(args))

    def decode_outputs(self, method: str, value: Any) -> Any:
        """Map struct/tuple results onto dicts keyed by ABI output names"""
        return _decode(self.query(method).outputs, value)


def find_artifact(artifacts_dir: str, contract_name: str) -> str:
    pattern = os.path.join(artifacts_dir, "**", f"{contract_name}.json")
    matches = [p for p in glob.glob(pattern, recursive=True) if not p.endswith(".dbg.json")]
    if not matches:
        raise ContractInterfaceError(f"Artifact for {contract_name} not found under {artifacts_dir}")
    return sorted(matches)[0]


def load_interfaces(artifacts_dir: str, artifact_names: Dict[str, str]) -> Dict[str, ContractInterface]:
    """Load ``{logical name: artifact contract name}`` into interfaces keyed by logical name"""
    return {
        name: ContractInterface.from_artifact(find_artifact(artifacts_dir, artifact), name=name)
        for name, artifact in artifact_names.items()
    }
