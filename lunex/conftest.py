"""
Shared fixtures: an in-memory chain standing in for ``Web3Gateway``, signers
and small contract interfaces for the Lunex contracts.
"""

from typing import Any, Callable, Dict, List, Optional, Set

import pytest
from eth_account import Account
from web3 import Web3

from lunex.chain import INSTANTIATED, ZERO_ADDRESS, ChainEvent, Receipt
from lunex.contracts import catalogue
from lunex.contracts.interface import ContractInterface
from lunex.errors import ChainConnectionError, QueryError, ResourceEstimationError
from lunex.signer import SignerContext

BYTECODE = "0x6080604052"
START_TIME = 1_700_000_000


def fn(name, inputs=(), outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


def view(name, inputs=(), outputs=(("", "uint256"),)):
    return fn(name, inputs, outputs, "view")


def constructor(*inputs):
    return {"type": "constructor", "stateMutability": "nonpayable",
            "inputs": [{"name": n, "type": t} for n, t in inputs]}


def event(name, *inputs):
    return {"type": "event", "name": name, "anonymous": False,
            "inputs": [{"name": n, "type": t, "indexed": False} for n, t in inputs]}


PROPOSAL_COMPONENTS = [
    ("id", "uint256"), ("title", "string"), ("description", "string"), ("tokenAddress", "address"),
    ("proposer", "address"), ("votingDeadline", "uint256"), ("votesFor", "uint256"),
    ("votesAgainst", "uint256"), ("executed", "bool"), ("active", "bool"), ("fee", "uint256"),
]

ABIS: Dict[str, List[Dict[str, Any]]] = {
    catalogue.WNATIVE: [
        constructor(),
        view("name", outputs=(("", "string"),)),
    ],
    catalogue.FACTORY: [
        constructor(("feeToSetter", "address")),
        view("feeToSetter", outputs=(("", "address"),)),
        view("allPairsLength"),
    ],
    catalogue.STAKING: [
        constructor(("treasury", "address")),
        view("owner", outputs=(("", "address"),)),
        view("treasury", outputs=(("", "address"),)),
        view("isPaused", outputs=(("", "bool"),)),
        view("getStats"),
        view("tradingRewardsContract", outputs=(("", "address"),)),
        view("getVotingPower", inputs=(("account", "address"),)),
        view("isProjectApproved", inputs=(("token", "address"),), outputs=(("", "bool"),)),
        {
            "type": "function", "name": "getProposal", "stateMutability": "view",
            "inputs": [{"name": "proposalId", "type": "uint256"}],
            "outputs": [{
                "name": "", "type": "tuple",
                "components": [{"name": n, "type": t} for n, t in PROPOSAL_COMPONENTS],
            }],
        },
        fn("setTradingRewardsContract", inputs=(("rewards", "address"),)),
        fn("createProposal", inputs=(("title", "string"), ("description", "string"),
                                     ("tokenAddress", "address"), ("votingPeriod", "uint256")),
           outputs=(("", "uint256"),), mutability="payable"),
        fn("vote", inputs=(("proposalId", "uint256"), ("inFavor", "bool"))),
        fn("executeProposal", inputs=(("proposalId", "uint256"),)),
        fn("adminListToken", inputs=(("token", "address"), ("reason", "string"))),
        {
            "type": "function", "name": "adminBatchListTokens", "stateMutability": "nonpayable",
            "inputs": [{
                "name": "tokens", "type": "tuple[]",
                "components": [{"name": "token", "type": "address"}, {"name": "reason", "type": "string"}],
            }],
            "outputs": [],
        },
        event("ProposalCreated", ("proposalId", "uint256"), ("proposer", "address"), ("tokenAddress", "address")),
        event("ProposalExecuted", ("proposalId", "uint256"), ("approved", "bool")),
    ],
    catalogue.ROUTER: [
        constructor(("factory", "address"), ("wNative", "address")),
        view("factory", outputs=(("", "address"),)),
        view("wNative", outputs=(("", "address"),)),
        fn("addLiquidityNative", inputs=(("token", "address"), ("amountTokenDesired", "uint256"),
                                         ("amountTokenMin", "uint256"), ("amountNativeMin", "uint256"),
                                         ("to", "address"), ("deadline", "uint256")),
           mutability="payable"),
    ],
    catalogue.REWARDS: [
        constructor(("admin", "address"), ("router", "address")),
        view("admin", outputs=(("", "address"),)),
        view("router", outputs=(("", "address"),)),
        view("authorizedRouter", outputs=(("", "address"),)),
        view("stakingContract", outputs=(("", "address"),)),
        view("isPaused", outputs=(("", "bool"),)),
        view("getStats"),
        fn("setAuthorizedRouter", inputs=(("router", "address"),)),
        fn("setStakingContract", inputs=(("staking", "address"),)),
    ],
    catalogue.TOKEN: [
        view("name", outputs=(("", "string"),)),
        view("symbol", outputs=(("", "string"),)),
        view("decimals", outputs=(("", "uint8"),)),
        fn("approve", inputs=(("spender", "address"), ("amount", "uint256")), outputs=(("", "bool"),)),
    ],
}


class Revert(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class FakeContract:
    def __init__(self, name: str, address: str, state: Optional[Dict[str, Any]] = None):
        self.name = name
        self.address = address
        self.state = dict(state or {})


class FakeChain:
    """Deterministic in-memory chain.

    Every ``send`` is mined into its own block. Each ``finalized_block`` poll
    mines an empty block, and a transaction is final once it is
    ``finality_lag`` blocks deep.
    """

    def __init__(self, finality_lag: int = 0):
        self.block = 0
        self.now = START_TIME
        self.finality_lag = finality_lag
        self.balances: Dict[str, int] = {}
        self.contracts: Dict[str, FakeContract] = {}
        self.sent: List[Any] = []
        self.txs: Dict[str, Dict[str, Any]] = {}
        self.on_deploy: Dict[str, Callable] = {}
        self.handlers: Dict[Any, Callable] = {}
        # Scripted failures, keyed by request label
        self.reverts: Dict[str, str] = {}
        self.estimate_errors: Dict[str, str] = {}
        self.dropped: Set[str] = set()
        self.gas: Dict[str, int] = {}
        self._observed: Set[str] = set()
        self._next_address = 0xC0DE00

    # --- helpers for tests ---

    def new_address(self) -> str:
        self._next_address += 1
        return Web3.to_checksum_address(f"0x{self._next_address:040x}")

    def install(self, name: str, state: Optional[Dict[str, Any]] = None) -> str:
        address = self.new_address()
        self.contracts[address.lower()] = FakeContract(name, address, state)
        return address

    def contract(self, address: str) -> FakeContract:
        return self.contracts[address.lower()]

    def labels(self) -> List[str]:
        return [request.label for request in self.sent]

    def fund(self, address: str, amount: int):
        self.balances[address.lower()] = self.balances.get(address.lower(), 0) + amount

    # --- gateway surface ---

    async def chain_id(self) -> int:
        return 31337

    async def chain_time(self) -> int:
        return self.now

    async def balance_of(self, address: str) -> int:
        return self.balances.get(address.lower(), 0)

    async def code_at(self, address: str) -> bytes:
        return bytes.fromhex(BYTECODE[2:]) if address.lower() in self.contracts else b""

    async def query(self, interface: ContractInterface, address: str, method: str, args=()) -> Any:
        args = interface.query(method).normalize_args(args)
        contract = self.contracts.get(address.lower())
        if contract is None or method not in contract.state:
            raise QueryError(f"{interface.name}.{method} at {address}: execution reverted")
        value = contract.state[method]
        return value(*args) if callable(value) else value

    async def estimate(self, request) -> int:
        if request.label in self.estimate_errors:
            raise ResourceEstimationError(request.label, self.estimate_errors[request.label])
        return self.gas.get(request.label, 100_000)

    async def send(self, request) -> str:
        self.sent.append(request)
        self.block += 1
        tx_hash = f"0x{len(self.sent):064x}"
        sender = request.signer.address
        value = request.limits.value
        payload = request.payload

        contract_address = None
        events: List[ChainEvent] = []
        reason = self.reverts.get(request.label)
        if reason is None:
            try:
                if payload.is_deployment:
                    contract_address = self.new_address()
                    hook = self.on_deploy.get(payload.interface.name)
                    state = hook(self, request) if hook else {}
                    self.contracts[contract_address.lower()] = FakeContract(
                        payload.interface.name, contract_address, state
                    )
                else:
                    contract = self.contract(payload.address)
                    handler = self.handlers.get((payload.interface.name, payload.method))
                    if handler is None:
                        raise Revert(f"no handler for {payload.method}")
                    events = handler(self, contract, request) or []
                    if value:
                        self.fund(contract.address, value)
                if value:
                    self.fund(sender, -value)
            except Revert as e:
                reason = e.reason
                contract_address = None
                events = []

        self.txs[tx_hash] = {
            "request": request,
            "receipt": Receipt(
                tx_hash=tx_hash,
                block_number=self.block,
                block_hash=f"0x{self.block:064x}",
                status=0 if reason else 1,
                contract_address=contract_address,
            ),
            "events": events,
            "reason": reason,
        }
        return tx_hash

    async def receipt(self, tx_hash: str) -> Optional[Receipt]:
        tx = self.txs.get(tx_hash)
        if tx is None:
            return None
        if tx["request"].label in self.dropped:
            if tx_hash in self._observed:
                raise ChainConnectionError("connection lost")
            self._observed.add(tx_hash)
        return tx["receipt"]

    async def finalized_block(self) -> int:
        self.block += 1
        return self.block - self.finality_lag

    async def revert_reason(self, tx_hash: str) -> str:
        return self.txs[tx_hash]["reason"] or "execution reverted"

    def decode_events(self, receipt: Receipt, interface: Optional[ContractInterface] = None) -> List[ChainEvent]:
        events: List[ChainEvent] = []
        if receipt.contract_address:
            events.append(ChainEvent(INSTANTIATED, {"contract": receipt.contract_address}, receipt.contract_address))
        if interface is not None:
            events.extend(self.txs[receipt.tx_hash]["events"])
        return events


# --- Lunex contract behaviour ---

def _deploy_state(chain: FakeChain, request) -> Dict[str, Any]:
    name = request.payload.interface.name
    args = request.payload.args
    sender = request.signer.address
    if name == catalogue.WNATIVE:
        return {"name": "Wrapped Lunes"}
    if name == catalogue.FACTORY:
        return {"feeToSetter": args[0], "allPairsLength": 0}
    if name == catalogue.STAKING:
        return {"owner": sender, "treasury": args[0], "isPaused": False, "getStats": 0,
                "tradingRewardsContract": ZERO_ADDRESS}
    if name == catalogue.ROUTER:
        return {"factory": args[0], "wNative": args[1]}
    if name == catalogue.REWARDS:
        return {"admin": args[0], "router": args[1], "authorizedRouter": ZERO_ADDRESS,
                "stakingContract": ZERO_ADDRESS, "isPaused": False, "getStats": 0}
    return {}


def _setter(getter: str):
    def handler(chain, contract, request):
        contract.state[getter] = request.payload.args[0]
    return handler


class StakingSimulation:
    """Proposal bookkeeping of the staking contract"""

    def __init__(self, chain: FakeChain, treasury: str):
        self.chain = chain
        self.treasury = treasury
        self.address: Optional[str] = None
        self.power: Dict[str, int] = {}
        self.proposals: Dict[int, Dict[str, Any]] = {}
        self.approved: Set[str] = set()
        self.voted: Set[Any] = set()

    def state(self) -> Dict[str, Any]:
        return {
            "getVotingPower": lambda account: self.power.get(account.lower(), 0),
            "isProjectApproved": lambda token: token.lower() in self.approved,
            "getProposal": self.get_proposal,
        }

    def stake(self, account: str, amount: int):
        self.power[account.lower()] = amount

    def seed(self, proposer: str, token: str, fee: int, votes_for: int = 0, votes_against: int = 0,
             deadline: Optional[int] = None, executed: bool = False) -> int:
        proposal_id = len(self.proposals) + 1
        self.proposals[proposal_id] = {
            "id": proposal_id, "title": f"LIST_{proposal_id}", "description": "", "tokenAddress": token,
            "proposer": proposer, "votingDeadline": deadline if deadline is not None else self.chain.now + 100,
            "votesFor": votes_for, "votesAgainst": votes_against, "executed": executed,
            "active": not executed, "fee": fee,
        }
        return proposal_id

    def get_proposal(self, proposal_id: int):
        p = self.proposals.get(proposal_id)
        if p is None:
            return (0, "", "", ZERO_ADDRESS, ZERO_ADDRESS, 0, 0, 0, False, False, 0)
        return tuple(p[name] for name, _ in PROPOSAL_COMPONENTS)

    def create(self, chain, contract, request):
        title, description, token, period = request.payload.args
        proposal_id = self.seed(request.signer.address, token, request.limits.value,
                                deadline=chain.now + period)
        self.proposals[proposal_id].update(title=title, description=description)
        return [ChainEvent("ProposalCreated", {"proposalId": proposal_id, "proposer": request.signer.address,
                                               "tokenAddress": token}, contract.address)]

    def vote(self, chain, contract, request):
        proposal_id, in_favor = request.payload.args
        p = self.proposals[proposal_id]
        if chain.now >= p["votingDeadline"]:
            raise Revert("VotingClosed")
        voter = request.signer.address.lower()
        if (proposal_id, voter) in self.voted:
            raise Revert("AlreadyVoted")
        self.voted.add((proposal_id, voter))
        p["votesFor" if in_favor else "votesAgainst"] += self.power.get(voter, 0)

    def execute(self, chain, contract, request):
        (proposal_id,) = request.payload.args
        p = self.proposals[proposal_id]
        if p["executed"]:
            raise Revert("AlreadyExecuted")
        if chain.now < p["votingDeadline"]:
            raise Revert("VotingStillActive")
        p["executed"] = True
        p["active"] = False
        approved = p["votesFor"] > p["votesAgainst"]
        if approved:
            self.approved.add(p["tokenAddress"].lower())
            chain.fund(p["proposer"], p["fee"])
        else:
            # 10% to the treasury, the rest stays with the staking pool
            chain.fund(self.treasury, p["fee"] // 10)
        return [ChainEvent("ProposalExecuted", {"proposalId": proposal_id, "approved": approved}, contract.address)]

    def admin_list(self, chain, contract, request):
        self.approved.add(request.payload.args[0].lower())

    def admin_batch_list(self, chain, contract, request):
        for token, _ in request.payload.args[0]:
            self.approved.add(token.lower())


@pytest.fixture
def chain():
    fake = FakeChain()
    for name in catalogue.CORE_CONTRACTS:
        fake.on_deploy[name] = _deploy_state
    for step in catalogue.INTEGRATIONS:
        fake.handlers[(step.contract, step.setter)] = _setter(step.getter)
    return fake


@pytest.fixture
def deployer():
    return SignerContext("deployer", Account.from_key("0x" + "11" * 32), 31337)


@pytest.fixture
def voter():
    return SignerContext("voter", Account.from_key("0x" + "22" * 32), 31337)


@pytest.fixture
def treasury():
    return Web3.to_checksum_address("0x" + "7e" * 20)


@pytest.fixture
def interfaces():
    return {name: ContractInterface.from_abi(name, abi, BYTECODE) for name, abi in ABIS.items()}


@pytest.fixture
def staking(chain, interfaces, treasury):
    """A live staking contract with the proposal simulation installed"""
    simulation = StakingSimulation(chain, treasury)
    address = chain.install(catalogue.STAKING, simulation.state())
    chain.handlers[(catalogue.STAKING, "createProposal")] = simulation.create
    chain.handlers[(catalogue.STAKING, "vote")] = simulation.vote
    chain.handlers[(catalogue.STAKING, "executeProposal")] = simulation.execute
    chain.handlers[(catalogue.STAKING, "adminListToken")] = simulation.admin_list
    chain.handlers[(catalogue.STAKING, "adminBatchListTokens")] = simulation.admin_batch_list
    simulation.address = address
    return simulation
