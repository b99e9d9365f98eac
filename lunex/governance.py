"""
Governance proposal workflow for token listings.

Created -> Voting -> {Approved, Rejected} -> Executed

The staking contract owns proposal state. This module submits the create,
vote and execute transactions through the tracker and reads proposal state
back; it never decides an outcome itself. Deadlines are compared against the
latest block timestamp, not the local clock.
"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from web3 import Web3

from lunex.contracts.interface import ContractInterface
from lunex.errors import (
    AlreadyExecutedError,
    DispatchError,
    ResourceEstimationError,
    ValidationError,
    VotingClosedError,
    VotingStillActiveError,
)
from lunex.signer import SignerContext
from lunex.tracker import ResourceLimits, TransactionOutcome, TransactionRequest, TransactionTracker, TxState

logger = logging.getLogger(__name__)

UNIT = 10 ** 18
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

CREATE_PROPOSAL_GAS = 500_000
VOTE_GAS = 200_000
EXECUTE_PROPOSAL_GAS = 400_000

# Staking contract error identifiers that map onto domain errors
DOMAIN_ERRORS = {
    "vote": {
        "VotingClosed": VotingClosedError,
        "VotingPeriodExpired": VotingClosedError,
        "AlreadyExecuted": VotingClosedError,
    },
    "executeProposal": {
        "AlreadyExecuted": AlreadyExecutedError,
        "VotingStillActive": VotingStillActiveError,
    },
}

_ERROR_IDENTIFIER = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)\s*(\(.*\))?\s*$")


def error_identifier(reason: str) -> Optional[str]:
    """``"execution reverted: VotingClosed()"`` -> ``"VotingClosed"``"""
    match = _ERROR_IDENTIFIER.match(reason.rsplit(":", 1)[-1].strip())
    return match.group(1) if match else None


@dataclass(frozen=True)
class GovernancePolicy:
    """Listing economics, in wei"""
    proposal_fee: int = 1_000 * UNIT
    implementation_fee: int = 5_000 * UNIT
    min_proposal_power: int = 10_000 * UNIT
    min_quorum: int = 1_000_000 * UNIT
    voting_period: int = 7 * 24 * 60 * 60


class ProposalStatus(str, Enum):
    CREATED = "created"
    VOTING = "voting"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"


@dataclass
class ProposalInfo:
    title: str
    description: str
    target_address: str
    voting_period: Optional[int] = None
    fee: Optional[int] = None


@dataclass
class Proposal:
    id: int
    title: str
    description: str
    target_address: str
    proposer: str
    voting_deadline: int
    votes_for: int
    votes_against: int
    executed: bool
    active: bool
    fee_paid: int

    @classmethod
    def from_chain(cls, data: Dict[str, Any]) -> "Proposal":
        return cls(
            id=int(data["id"]),
            title=data["title"],
            description=data["description"],
            target_address=data["tokenAddress"],
            proposer=data["proposer"],
            voting_deadline=int(data["votingDeadline"]),
            votes_for=int(data["votesFor"]),
            votes_against=int(data["votesAgainst"]),
            executed=bool(data["executed"]),
            active=bool(data["active"]),
            fee_paid=int(data["fee"]),
        )

    @property
    def total_votes(self) -> int:
        return self.votes_for + self.votes_against

    def accepts_votes(self, now: int) -> bool:
        return now < self.voting_deadline and not self.executed

    def status(self, now: int) -> ProposalStatus:
        if self.executed:
            return ProposalStatus.EXECUTED
        if now < self.voting_deadline:
            return ProposalStatus.VOTING if self.total_votes else ProposalStatus.CREATED
        if self.votes_for > self.votes_against:
            return ProposalStatus.APPROVED
        return ProposalStatus.REJECTED


@dataclass
class ProposalReport:
    proposal: Proposal
    status: ProposalStatus
    chain_time: int
    quorum_reached: bool

    @property
    def seconds_remaining(self) -> int:
        return max(self.proposal.voting_deadline - self.chain_time, 0)


@dataclass
class ExecutionResult:
    proposal: Proposal
    approved: bool
    outcome: TransactionOutcome


class ProposalWorkflow:
    def __init__(self, chain, tracker: TransactionTracker, staking: ContractInterface, staking_address: str,
                 policy: GovernancePolicy = GovernancePolicy()):
        self.chain = chain
        self.tracker = tracker
        self.staking = staking
        self.staking_address = staking_address
        self.policy = policy
        # Reporting cache only; the chain is authoritative
        self.proposals: Dict[int, Proposal] = {}

    # --- Reads ---

    async def get_proposal(self, proposal_id: int) -> Proposal:
        raw = await self.chain.query(self.staking, self.staking_address, "getProposal", (proposal_id,))
        proposal = Proposal.from_chain(self.staking.decode_outputs("getProposal", raw))
        if proposal.id != proposal_id or proposal.proposer == ZERO_ADDRESS:
            raise ValidationError(f"Proposal {proposal_id} does not exist")
        self.proposals[proposal_id] = proposal
        return proposal

    async def voting_power(self, address: str) -> int:
        return int(await self.chain.query(self.staking, self.staking_address, "getVotingPower", (address,)))

    async def status(self, proposal_id: int) -> ProposalReport:
        proposal = await self.get_proposal(proposal_id)
        now = await self.chain.chain_time()
        return ProposalReport(
            proposal=proposal,
            status=proposal.status(now),
            chain_time=now,
            quorum_reached=proposal.total_votes >= self.policy.min_quorum,
        )

    # --- Transactions ---

    def _domain_error(self, operation: str, proposal_id: Optional[int], reason: str,
                      tx_hash: Optional[str] = None) -> Optional[DispatchError]:
        if proposal_id is None:
            return None
        error = DOMAIN_ERRORS.get(operation, {}).get(error_identifier(reason))
        return error(proposal_id, tx_hash) if error is not None else None

    async def _send(self, request: TransactionRequest, operation: str,
                    proposal_id: Optional[int] = None) -> TransactionOutcome:
        try:
            await self.chain.estimate(request)
        except ResourceEstimationError as e:
            domain = self._domain_error(operation, proposal_id, e.reason)
            if domain is not None:
                raise domain from e
            raise

        outcome = await self.tracker.submit_and_track(request)
        if outcome.state is TxState.FAILED:
            domain = self._domain_error(operation, proposal_id, outcome.dispatch_error or "", outcome.tx_hash)
            if domain is not None:
                raise domain
        return outcome.raise_for_state()

    async def create_proposal(self, signer: SignerContext, info: ProposalInfo) -> Proposal:
        if not info.title.strip():
            raise ValidationError("Proposal title is required")
        if not Web3.is_address(info.target_address):
            raise ValidationError(f"Target {info.target_address!r} is not an address")
        fee = self.policy.proposal_fee if info.fee is None else info.fee
        if fee < self.policy.proposal_fee:
            raise ValidationError(f"Proposal fee {fee} is below the required {self.policy.proposal_fee}")

        power = await self.voting_power(signer.address)
        if power < self.policy.min_proposal_power:
            raise ValidationError(
                f"Insufficient voting power: {power} < required {self.policy.min_proposal_power}"
            )
        balance = await self.chain.balance_of(signer.address)
        if balance < fee:
            raise ValidationError(f"Insufficient balance for the proposal fee: {balance} < {fee}")

        request = TransactionRequest(
            payload=self.staking.call(
                "createProposal",
                info.title,
                info.description,
                Web3.to_checksum_address(info.target_address),
                info.voting_period or self.policy.voting_period,
                address=self.staking_address,
            ),
            signer=signer,
            limits=ResourceLimits(gas_limit=CREATE_PROPOSAL_GAS, value=fee),
            label=f"createProposal {info.title}",
        )
        outcome = await self._send(request, "createProposal")

        event = outcome.find_event("ProposalCreated")
        if event is None:
            raise DispatchError(request.label, "no ProposalCreated event in finalized receipt", outcome.tx_hash)
        proposal_id = int(event.args["proposalId"])
        logger.info(f"Proposal {proposal_id} created for {info.target_address} (tx {outcome.tx_hash})")
        return await self.get_proposal(proposal_id)

    async def vote(self, signer: SignerContext, proposal_id: int, in_favor: bool) -> Proposal:
        proposal = await self.get_proposal(proposal_id)
        if not proposal.accepts_votes(await self.chain.chain_time()):
            raise VotingClosedError(proposal_id)
        if await self.voting_power(signer.address) == 0:
            raise ValidationError(f"{signer.address} has no staked balance to vote with")

        request = TransactionRequest(
            payload=self.staking.call("vote", proposal_id, in_favor, address=self.staking_address),
            signer=signer,
            limits=ResourceLimits(gas_limit=VOTE_GAS),
            label=f"vote {'for' if in_favor else 'against'} {proposal_id}",
        )
        await self._send(request, "vote", proposal_id)
        updated = await self.get_proposal(proposal_id)
        logger.info(f"Proposal {proposal_id} tally: {updated.votes_for} for / {updated.votes_against} against")
        return updated

    async def execute_proposal(self, signer: SignerContext, proposal_id: int) -> ExecutionResult:
        proposal = await self.get_proposal(proposal_id)
        if proposal.executed:
            raise AlreadyExecutedError(proposal_id)
        if await self.chain.chain_time() < proposal.voting_deadline:
            raise VotingStillActiveError(proposal_id)

        request = TransactionRequest(
            payload=self.staking.call("executeProposal", proposal_id, address=self.staking_address),
            signer=signer,
            limits=ResourceLimits(gas_limit=EXECUTE_PROPOSAL_GAS),
            label=f"executeProposal {proposal_id}",
        )
        outcome = await self._send(request, "executeProposal", proposal_id)

        event = outcome.find_event("ProposalExecuted")
        if event is None or int(event.args["proposalId"]) != proposal_id:
            raise DispatchError(request.label, "no ProposalExecuted event in finalized receipt", outcome.tx_hash)
        approved = bool(event.args["approved"])
        executed = await self.get_proposal(proposal_id)
        logger.info(f"Proposal {proposal_id} executed: {'approved' if approved else 'rejected'}")
        return ExecutionResult(proposal=executed, approved=approved, outcome=outcome)
