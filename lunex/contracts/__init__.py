"""
Contract Interfaces
===================

Typed descriptors for the Lunex contracts and the deployment catalogue:
- ContractInterface: ABI/bytecode descriptor validated at load time
- QueryMethod / TransactMethod: read-only and state-changing capabilities
- catalogue: deployment order, budgets and wiring for the core contracts
"""

from lunex.contracts.interface import (
    ContractCall,
    ContractInterface,
    MethodDescriptor,
    QueryMethod,
    TransactMethod,
    find_artifact,
    load_interfaces,
)

__all__ = [
    'ContractCall',
    'ContractInterface',
    'MethodDescriptor',
    'QueryMethod',
    'TransactMethod',
    'find_artifact',
    'load_interfaces',
]
