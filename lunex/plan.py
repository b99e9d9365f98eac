"""
Deployment plans: contract specs ordered so every dependency comes first.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence

import networkx as nx

from lunex.contracts import catalogue
from lunex.errors import PlanError

PLACEHOLDER = re.compile(r"^\$\{([A-Za-z0-9_\-]+)\}$")
RESERVED_PLACEHOLDERS = frozenset({"deployer", "treasury"})

# EIP-170 maximum deployed code size in bytes
MAX_CODE_SIZE = 24576


@dataclass(frozen=True)
class ResourceBudget:
    gas_limit: int
    code_size_limit: int = MAX_CODE_SIZE


@dataclass(frozen=True)
class ContractSpec:
    name: str
    constructor_args: Sequence[Any] = ()
    depends_on: FrozenSet[str] = frozenset()
    budget: ResourceBudget = field(default_factory=lambda: ResourceBudget(gas_limit=5_000_000))

    def referenced_names(self) -> List[str]:
        """Contract names referenced by ``${name}`` constructor placeholders"""
        names = []
        for arg in self.constructor_args:
            match = PLACEHOLDER.match(arg) if isinstance(arg, str) else None
            if match and match.group(1) not in RESERVED_PLACEHOLDERS:
                names.append(match.group(1))
        return names


def dependency_graph(specs: Iterable[ContractSpec]) -> nx.DiGraph:
    """Edges point from a dependency to the contract that needs it"""
    graph = nx.DiGraph()
    specs = list(specs)
    seen = set()
    for spec in specs:
        if spec.name in seen:
            raise PlanError(f"Contract {spec.name} appears more than once")
        seen.add(spec.name)
        graph.add_node(spec.name)

    for spec in specs:
        for referenced in spec.referenced_names():
            if referenced not in spec.depends_on:
                raise PlanError(f"{spec.name} references ${{{referenced}}} without depending on it")
        for dependency in spec.depends_on:
            if dependency not in seen:
                raise PlanError(f"{spec.name} depends on unknown contract {dependency}")
            graph.add_edge(dependency, spec.name)

    if not nx.is_directed_acyclic_graph(graph):
        cycle = " -> ".join(edge[0] for edge in nx.find_cycle(graph))
        raise PlanError(f"Dependency cycle: {cycle}")
    return graph


@dataclass
class DeploymentPlan:
    specs: List[ContractSpec]

    @classmethod
    def from_specs(cls, specs: Iterable[ContractSpec]) -> "DeploymentPlan":
        """Topologically order specs; ties keep declaration order"""
        specs = list(specs)
        graph = dependency_graph(specs)
        position = {spec.name: index for index, spec in enumerate(specs)}
        by_name = {spec.name: spec for spec in specs}
        ordered = nx.lexicographical_topological_sort(graph, key=lambda name: position[name])
        return cls([by_name[name] for name in ordered])

    def validate(self) -> "DeploymentPlan":
        """Reject a plan whose order is not a topological order of its dependencies"""
        dependency_graph(self.specs)
        placed = set()
        for spec in self.specs:
            missing = sorted(spec.depends_on - placed)
            if missing:
                raise PlanError(f"{spec.name} is scheduled before its dependencies: {', '.join(missing)}")
            placed.add(spec.name)
        return self

    @property
    def names(self) -> List[str]:
        return [spec.name for spec in self.specs]

    def get(self, name: str) -> Optional[ContractSpec]:
        for spec in self.specs:
            if spec.name == name:
                return spec
        return None

    def __iter__(self) -> Iterator[ContractSpec]:
        return iter(self.specs)

    def __len__(self) -> int:
        return len(self.specs)


def catalogue_plan(overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> DeploymentPlan:
    """Default Lunex plan, optionally adjusted by a deployment config's ``contracts`` section"""
    overrides = overrides or {}
    unknown = sorted(set(overrides) - set(catalogue.CORE_CONTRACTS))
    if unknown:
        raise PlanError(f"Deployment config names unknown contracts: {', '.join(unknown)}")

    specs = []
    for name in catalogue.CORE_CONTRACTS:
        settings = overrides.get(name, {})
        specs.append(ContractSpec(
            name=name,
            constructor_args=tuple(settings.get("args", catalogue.CONSTRUCTOR_ARGS[name])),
            depends_on=frozenset(settings.get("dependsOn", catalogue.DEPENDENCIES[name])),
            budget=ResourceBudget(
                gas_limit=int(settings.get("gasLimit", catalogue.GAS_LIMITS[name])),
                code_size_limit=int(settings.get("codeSizeLimit", MAX_CODE_SIZE)),
            ),
        ))
    return DeploymentPlan.from_specs(specs)
