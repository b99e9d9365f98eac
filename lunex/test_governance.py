"""
Tests for the governance proposal workflow
"""

import pytest

from lunex.contracts import catalogue
from lunex.errors import (
    AlreadyExecutedError,
    DispatchError,
    ResourceEstimationError,
    ValidationError,
    VotingClosedError,
    VotingStillActiveError,
)
from lunex.governance import GovernancePolicy, ProposalInfo, ProposalStatus, ProposalWorkflow, error_identifier
from lunex.tracker import TransactionTracker

TOKEN = "0x" + "70" * 20
POLICY = GovernancePolicy(
    proposal_fee=1000,
    implementation_fee=5000,
    min_proposal_power=10_000,
    min_quorum=100_000,
    voting_period=100,
)


@pytest.fixture
def workflow(chain, interfaces, staking):
    tracker = TransactionTracker(chain, poll_interval=0, timeout=5)
    return ProposalWorkflow(chain, tracker, interfaces[catalogue.STAKING], staking.address, POLICY)


class TestProposalStatus:
    """Test class for status derivation from chain state"""

    @pytest.mark.asyncio
    async def test_status_follows_chain_time(self, chain, staking, workflow, deployer):
        proposal_id = staking.seed(deployer.address, TOKEN, 1000, votes_for=150_000, votes_against=50_000)

        report = await workflow.status(proposal_id)
        assert report.status is ProposalStatus.VOTING
        assert report.quorum_reached
        assert report.seconds_remaining == 100

        chain.now += 100
        report = await workflow.status(proposal_id)
        assert report.status is ProposalStatus.APPROVED
        assert report.seconds_remaining == 0
        assert workflow.proposals[proposal_id].votes_for == 150_000

    @pytest.mark.asyncio
    async def test_status_without_votes(self, chain, staking, workflow, deployer):
        proposal_id = staking.seed(deployer.address, TOKEN, 1000)
        report = await workflow.status(proposal_id)
        assert report.status is ProposalStatus.CREATED
        assert not report.quorum_reached

        chain.now += 1000
        assert (await workflow.status(proposal_id)).status is ProposalStatus.REJECTED

    @pytest.mark.asyncio
    async def test_unknown_proposal(self, workflow):
        with pytest.raises(ValidationError, match="does not exist"):
            await workflow.get_proposal(42)


class TestCreateProposal:
    """Test class for proposal creation"""

    @pytest.mark.asyncio
    async def test_create_proposal(self, chain, staking, workflow, deployer):
        staking.stake(deployer.address, 20_000)
        chain.fund(deployer.address, 10_000)

        proposal = await workflow.create_proposal(deployer, ProposalInfo("LIST_EXT", "Example token", TOKEN))

        assert proposal.id == 1
        assert proposal.fee_paid == 1000
        assert proposal.voting_deadline == chain.now + POLICY.voting_period
        assert await chain.balance_of(deployer.address) == 9_000
        assert chain.sent[-1].limits.value == 1000

    @pytest.mark.asyncio
    async def test_insufficient_voting_power(self, chain, staking, workflow, deployer):
        staking.stake(deployer.address, 9_999)
        chain.fund(deployer.address, 10_000)
        with pytest.raises(ValidationError, match="voting power"):
            await workflow.create_proposal(deployer, ProposalInfo("LIST_EXT", "", TOKEN))
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, chain, staking, workflow, deployer):
        staking.stake(deployer.address, 20_000)
        chain.fund(deployer.address, 999)
        with pytest.raises(ValidationError, match="proposal fee"):
            await workflow.create_proposal(deployer, ProposalInfo("LIST_EXT", "", TOKEN))
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_invalid_info(self, workflow, deployer):
        with pytest.raises(ValidationError, match="title"):
            await workflow.create_proposal(deployer, ProposalInfo(" ", "", TOKEN))
        with pytest.raises(ValidationError, match="not an address"):
            await workflow.create_proposal(deployer, ProposalInfo("LIST_EXT", "", "EXT"))
        with pytest.raises(ValidationError, match="below the required"):
            await workflow.create_proposal(deployer, ProposalInfo("LIST_EXT", "", TOKEN, fee=1))


class TestVote:
    """Test class for voting"""

    @pytest.mark.asyncio
    async def test_vote_changes_tally(self, staking, workflow, voter, deployer):
        staking.stake(voter.address, 40_000)
        proposal_id = staking.seed(deployer.address, TOKEN, 1000)

        proposal = await workflow.vote(voter, proposal_id, in_favor=False)
        assert proposal.votes_against == 40_000
        assert proposal.votes_for == 0

    @pytest.mark.asyncio
    async def test_vote_after_deadline(self, chain, staking, workflow, voter, deployer):
        staking.stake(voter.address, 40_000)
        proposal_id = staking.seed(deployer.address, TOKEN, 1000)
        chain.now += 100

        with pytest.raises(VotingClosedError):
            await workflow.vote(voter, proposal_id, in_favor=True)
        assert chain.sent == []
        assert staking.proposals[proposal_id]["votesFor"] == 0

    @pytest.mark.asyncio
    async def test_vote_without_stake(self, chain, staking, workflow, voter, deployer):
        proposal_id = staking.seed(deployer.address, TOKEN, 1000)
        with pytest.raises(ValidationError, match="no staked balance"):
            await workflow.vote(voter, proposal_id, in_favor=True)
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_chain_rejection_maps_to_domain_error(self, chain, staking, workflow, voter, deployer):
        staking.stake(voter.address, 40_000)
        proposal_id = staking.seed(deployer.address, TOKEN, 1000)
        chain.estimate_errors[f"vote for {proposal_id}"] = "execution reverted: VotingClosed"

        with pytest.raises(VotingClosedError) as exc:
            await workflow.vote(voter, proposal_id, in_favor=True)
        assert isinstance(exc.value.__cause__, ResourceEstimationError)


class TestExecuteProposal:
    """Test class for proposal execution"""

    @pytest.mark.asyncio
    async def test_approved_proposal_refunds_and_lists(self, chain, staking, workflow, deployer, voter):
        proposal_id = staking.seed(deployer.address, TOKEN, 1000, votes_for=150_000, votes_against=50_000)
        chain.now += 100
        before = await chain.balance_of(deployer.address)

        result = await workflow.execute_proposal(voter, proposal_id)

        assert result.approved
        assert result.proposal.executed
        assert await chain.balance_of(deployer.address) == before + 1000
        assert TOKEN.lower() in staking.approved

    @pytest.mark.asyncio
    async def test_rejected_proposal_redistributes(self, chain, staking, workflow, deployer, voter, treasury):
        proposal_id = staking.seed(deployer.address, TOKEN, 1000, votes_for=50_000, votes_against=150_000)
        chain.now += 100

        result = await workflow.execute_proposal(voter, proposal_id)

        assert not result.approved
        assert result.proposal.executed
        assert await chain.balance_of(deployer.address) == 0
        assert await chain.balance_of(treasury) == 100
        assert TOKEN.lower() not in staking.approved

    @pytest.mark.asyncio
    async def test_execute_twice(self, chain, staking, workflow, deployer, voter):
        proposal_id = staking.seed(deployer.address, TOKEN, 1000, votes_for=150_000)
        chain.now += 100
        await workflow.execute_proposal(voter, proposal_id)
        balances = dict(chain.balances)
        sent = len(chain.sent)

        with pytest.raises(AlreadyExecutedError, match="already executed"):
            await workflow.execute_proposal(voter, proposal_id)
        assert chain.balances == balances
        assert len(chain.sent) == sent

    @pytest.mark.asyncio
    async def test_execute_during_voting(self, chain, staking, workflow, deployer, voter):
        proposal_id = staking.seed(deployer.address, TOKEN, 1000, votes_for=150_000)
        with pytest.raises(VotingStillActiveError, match="voting still active"):
            await workflow.execute_proposal(voter, proposal_id)
        assert chain.sent == []

    @pytest.mark.asyncio
    async def test_revert_after_submission_maps_to_domain_error(self, chain, staking, workflow, deployer, voter):
        proposal_id = staking.seed(deployer.address, TOKEN, 1000, votes_for=150_000)
        chain.now += 100
        chain.reverts[f"executeProposal {proposal_id}"] = "AlreadyExecuted"

        with pytest.raises(AlreadyExecutedError) as exc:
            await workflow.execute_proposal(voter, proposal_id)
        assert exc.value.tx_hash is not None

    @pytest.mark.asyncio
    async def test_unrelated_revert_is_dispatch_error(self, chain, staking, workflow, deployer, voter):
        proposal_id = staking.seed(deployer.address, TOKEN, 1000, votes_for=150_000)
        chain.now += 100
        chain.reverts[f"executeProposal {proposal_id}"] = "ReentrancyGuard: reentrant call"

        with pytest.raises(DispatchError, match="reentrant") as exc:
            await workflow.execute_proposal(voter, proposal_id)
        assert not isinstance(exc.value, AlreadyExecutedError)


class TestErrorIdentifiers:
    """Test class for mapping revert reasons onto domain errors"""

    def test_error_identifier(self):
        assert error_identifier("execution reverted: VotingClosed") == "VotingClosed"
        assert error_identifier("execution reverted: VotingStillActive()") == "VotingStillActive"
        assert error_identifier("AlreadyExecuted") == "AlreadyExecuted"
        assert error_identifier("execution reverted: ReentrancyGuard: reentrant call") is None

    @pytest.mark.asyncio
    async def test_similar_names_are_not_domain_errors(self, chain, staking, workflow, deployer, voter):
        proposal_id = staking.seed(deployer.address, TOKEN, 1000, votes_for=150_000)
        chain.now += 100
        chain.reverts[f"executeProposal {proposal_id}"] = "ProposalNotActive"

        with pytest.raises(DispatchError, match="ProposalNotActive") as exc:
            await workflow.execute_proposal(voter, proposal_id)
        assert not isinstance(exc.value, (VotingStillActiveError, AlreadyExecutedError))
