"""
Token listing through governance, and initial liquidity provisioning.
"""

import os
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from web3 import Web3

from lunex.contracts.interface import ContractInterface
from lunex.errors import ConfigError, QueryError, ValidationError
from lunex.governance import Proposal, ProposalInfo, ProposalWorkflow
from lunex.signer import SignerContext
from lunex.tracker import ResourceLimits, TransactionOutcome, TransactionRequest, TransactionTracker

logger = logging.getLogger(__name__)

APPROVE_GAS = 200_000
ADD_LIQUIDITY_GAS = 4_000_000
SLIPPAGE_PERCENT = 5
LIQUIDITY_DEADLINE = 3600


@dataclass
class TokenInfo:
    address: str
    name: str
    symbol: str
    decimals: int
    description: str = ""
    website: Optional[str] = None
    whitepaper: Optional[str] = None
    audit: Optional[str] = None

    def proposal_title(self) -> str:
        return f"LIST_{self.symbol.upper()}"

    def proposal_description(self) -> str:
        lines = [
            f"List {self.name} ({self.symbol}) on Lunex DEX",
            "",
            f"Address: {self.address}",
            f"Decimals: {self.decimals}",
            f"Description: {self.description}",
        ]
        if self.website:
            lines.append(f"Website: {self.website}")
        if self.whitepaper:
            lines.append(f"Whitepaper: {self.whitepaper}")
        if self.audit:
            lines.append(f"Audit: {self.audit}")
        return "\n".join(lines)


@dataclass
class InitialLiquidity:
    token_amount: int
    quote_amount: int


@dataclass
class ListingConfig:
    network: str
    staking_contract: str
    router_contract: str
    token: TokenInfo
    signer: Optional[str] = None
    factory_contract: Optional[str] = None
    initial_liquidity: Optional[InitialLiquidity] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ListingConfig":
        try:
            token = TokenInfo(
                address=data["token"]["address"],
                name=data["token"]["name"],
                symbol=data["token"]["symbol"],
                decimals=int(data["token"]["decimals"]),
                description=data["token"].get("description", ""),
                website=data["token"].get("website"),
                whitepaper=data["token"].get("whitepaper"),
                audit=data["token"].get("audit"),
            )
            liquidity = None
            if data.get("initialLiquidity"):
                liquidity = InitialLiquidity(
                    token_amount=int(data["initialLiquidity"]["tokenAmount"]),
                    quote_amount=int(data["initialLiquidity"]["quoteAmount"]),
                )
            config = cls(
                network=data["network"],
                staking_contract=data["stakingContract"],
                router_contract=data["routerContract"],
                token=token,
                signer=data.get("signer"),
                factory_contract=data.get("factoryContract"),
                initial_liquidity=liquidity,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid listing config: {e}") from e

        for label, address in (("stakingContract", config.staking_contract),
                               ("routerContract", config.router_contract),
                               ("token.address", token.address)):
            if not Web3.is_address(address):
                raise ConfigError(f"{label} {address!r} is not an address")
        config.staking_contract = Web3.to_checksum_address(config.staking_contract)
        config.router_contract = Web3.to_checksum_address(config.router_contract)
        token.address = Web3.to_checksum_address(token.address)
        return config

    @classmethod
    def load(cls, path: str) -> "ListingConfig":
        try:
            with open(path, 'r') as f:
                return cls.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read listing config {path}: {e}") from e


@dataclass
class ListingResult:
    proposal: Proposal
    report_path: Optional[str] = None
    report: Dict[str, Any] = field(default_factory=dict)


class TokenLister:
    def __init__(self, chain, tracker: TransactionTracker, workflow: ProposalWorkflow,
                 token_interface: ContractInterface, router_interface: ContractInterface,
                 router_address: str, report_dir: str = "."):
        self.chain = chain
        self.tracker = tracker
        self.workflow = workflow
        self.token_interface = token_interface
        self.router_interface = router_interface
        self.router_address = router_address
        self.report_dir = report_dir

    async def is_listed(self, token_address: str) -> bool:
        workflow = self.workflow
        return bool(await self.chain.query(
            workflow.staking, workflow.staking_address, "isProjectApproved", (token_address,)
        ))

    async def validate_token(self, token: TokenInfo, proposer: SignerContext):
        """Raise ValidationError unless the token can be proposed by ``proposer``"""
        logger.info(f"Validating token {token.symbol} at {token.address}")
        try:
            name = await self.chain.query(self.token_interface, token.address, "name")
            symbol = await self.chain.query(self.token_interface, token.address, "symbol")
            decimals = await self.chain.query(self.token_interface, token.address, "decimals")
        except QueryError as e:
            raise ValidationError(f"{token.address} is not a valid ERC20 token: {e}") from e
        if symbol != token.symbol or int(decimals) != token.decimals:
            raise ValidationError(
                f"Token reports {name} ({symbol}, {decimals} decimals), "
                f"config declares {token.symbol} with {token.decimals} decimals"
            )

        if await self.is_listed(token.address):
            raise ValidationError(f"{token.symbol} is already listed")

        policy = self.workflow.policy
        power = await self.workflow.voting_power(proposer.address)
        if power < policy.min_proposal_power:
            raise ValidationError(f"Insufficient voting power: {power} < required {policy.min_proposal_power}")

        balance = await self.chain.balance_of(proposer.address)
        fees = policy.proposal_fee + policy.implementation_fee
        if balance < fees:
            raise ValidationError(f"Insufficient balance for listing fees: {balance} < {fees}")
        logger.info(f"Token {token.symbol} validated")

    async def list_token(self, signer: SignerContext, config: ListingConfig) -> ListingResult:
        """Validate the token, open the listing proposal and write a listing report"""
        token = config.token
        await self.validate_token(token, signer)

        proposal = await self.workflow.create_proposal(signer, ProposalInfo(
            title=token.proposal_title(),
            description=token.proposal_description(),
            target_address=token.address,
        ))
        logger.info(f"Listing proposal {proposal.id} opened; voting ends at {proposal.voting_deadline}")
        if config.initial_liquidity is not None:
            logger.info(
                f"After approval add liquidity with: lunex add-liquidity {token.address} "
                f"{config.initial_liquidity.token_amount} {config.initial_liquidity.quote_amount}"
            )

        result = ListingResult(proposal=proposal)
        result.report = self.listing_report(config, proposal, signer)
        result.report_path = self.write_report(token, result.report)
        return result

    def listing_report(self, config: ListingConfig, proposal: Proposal, signer: SignerContext) -> Dict[str, Any]:
        policy = self.workflow.policy
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "network": config.network,
            "token": asdict(config.token),
            "proposalId": proposal.id,
            "proposer": signer.address,
            "votingDeadline": proposal.voting_deadline,
            "status": "proposed",
            "fees": {
                "proposal": str(policy.proposal_fee),
                "implementation": str(policy.implementation_fee),
            },
        }

    def write_report(self, token: TokenInfo, report: Dict[str, Any]) -> str:
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        filename = os.path.join(self.report_dir, f"token-listing-{token.symbol.lower()}-{timestamp}.json")
        with open(filename, 'w') as f:
            json.dump(report, f, indent=2)
        logger.info(f"Listing report saved to {filename}")
        return filename

    async def add_liquidity(self, signer: SignerContext, token_address: str, token_amount: int,
                            quote_amount: int) -> TransactionOutcome:
        """Approve the router, then add token/native liquidity with a 5% slippage floor"""
        if token_amount <= 0 or quote_amount <= 0:
            raise ValidationError("Liquidity amounts must be positive")
        if not Web3.is_address(token_address):
            raise ValidationError(f"Token {token_address!r} is not an address")
        token_address = Web3.to_checksum_address(token_address)

        balance = await self.chain.balance_of(signer.address)
        if balance < quote_amount:
            raise ValidationError(f"Insufficient native balance: {balance} < {quote_amount}")

        approve = TransactionRequest(
            payload=self.token_interface.call("approve", self.router_address, token_amount, address=token_address),
            signer=signer,
            limits=ResourceLimits(gas_limit=APPROVE_GAS),
            label=f"approve router for {token_amount}",
        )
        await self.chain.estimate(approve)
        (await self.tracker.submit_and_track(approve)).raise_for_state()

        deadline = await self.chain.chain_time() + LIQUIDITY_DEADLINE
        request = TransactionRequest(
            payload=self.router_interface.call(
                "addLiquidityNative",
                token_address,
                token_amount,
                token_amount * (100 - SLIPPAGE_PERCENT) // 100,
                quote_amount * (100 - SLIPPAGE_PERCENT) // 100,
                signer.address,
                deadline,
                address=self.router_address,
            ),
            signer=signer,
            limits=ResourceLimits(gas_limit=ADD_LIQUIDITY_GAS, value=quote_amount),
            label=f"addLiquidityNative {token_address}",
        )
        await self.chain.estimate(request)
        outcome = (await self.tracker.submit_and_track(request)).raise_for_state()
        logger.info(f"Liquidity added for {token_address} in block {outcome.block_number}")
        return outcome
