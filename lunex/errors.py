"""
Error taxonomy for the deployment tooling.

Validation and estimation errors are raised before anything is submitted.
Dispatch errors are raised after an on-chain revert has been observed on a
finalized transaction. Verification mismatches are never raised, they are
collected into the report (see ``lunex.verifier``).
"""

from typing import Optional


class LunexError(Exception):
    """Base class for all tooling errors"""


class ChainConnectionError(LunexError):
    """The RPC endpoint could not be reached"""


class ValidationError(LunexError):
    """Input rejected before any transaction was submitted"""


class ConfigError(ValidationError):
    """Configuration document is missing a field or is malformed"""


class PlanError(ValidationError):
    """Deployment plan is not a valid topological order"""


class ContractInterfaceError(ValidationError):
    """Contract artifact or call shape does not match the interface"""


class QueryError(LunexError):
    """A read-only contract call reverted or returned undecodable data"""


class RecordError(LunexError):
    """Attempted to rewrite a finalized deployment record entry"""


class ResourceEstimationError(LunexError):
    """Dry-run shows the operation would revert or exceed its budget"""

    def __init__(self, label: str, reason: str):
        super().__init__(f"{label}: {reason}")
        self.label = label
        self.reason = reason


class DispatchError(LunexError):
    """On-chain execution reverted after the transaction was finalized"""

    def __init__(self, label: str, reason: str, tx_hash: Optional[str] = None):
        message = f"{label} failed on-chain: {reason}"
        if tx_hash:
            message += f" (tx {tx_hash})"
        super().__init__(message)
        self.label = label
        self.reason = reason
        self.tx_hash = tx_hash


class VotingStillActiveError(DispatchError):
    def __init__(self, proposal_id: int, tx_hash: Optional[str] = None):
        super().__init__(f"executeProposal({proposal_id})", "voting still active", tx_hash)
        self.proposal_id = proposal_id


class AlreadyExecutedError(DispatchError):
    def __init__(self, proposal_id: int, tx_hash: Optional[str] = None):
        super().__init__(f"proposal {proposal_id}", "already executed", tx_hash)
        self.proposal_id = proposal_id


class VotingClosedError(DispatchError):
    def __init__(self, proposal_id: int, tx_hash: Optional[str] = None):
        super().__init__(f"vote({proposal_id})", "voting period is closed", tx_hash)
        self.proposal_id = proposal_id


class OutcomeUnknownError(LunexError):
    """Observation was lost before the transaction reached a terminal state.

    The transaction may still succeed. Callers must reconcile against live
    chain state (``TransactionTracker.reconcile``) instead of assuming failure.
    """

    def __init__(self, label: str, tx_hash: Optional[str], reason: str = ""):
        message = f"{label}: outcome unknown for tx {tx_hash}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
        self.label = label
        self.tx_hash = tx_hash
        self.reason = reason


class DeploymentAborted(LunexError):
    """A deployment phase stopped; the record holds every finalized entry"""

    def __init__(self, phase: str, contract: str, cause: LunexError, record=None):
        super().__init__(f"{phase} aborted at {contract}: {cause}")
        self.phase = phase
        self.contract = contract
        self.cause = cause
        self.record = record
