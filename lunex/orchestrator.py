"""
Deployment orchestration.

Instantiates the contracts of a ``DeploymentPlan`` in dependency order,
persisting every finalized instantiation to the ``DeploymentRecord`` as it
happens, then wires sibling addresses into each other's configuration.

Any Failed or Unknown outcome stops the run before the next contract or
phase is scheduled. Nothing already finalized is undone; re-running with the
same plan and the partial record resumes where the run stopped.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from web3 import Web3

from lunex.chain import ZERO_ADDRESS
from lunex.config import InitialToken
from lunex.contracts import catalogue
from lunex.contracts.catalogue import IntegrationStep
from lunex.contracts.interface import ContractInterface
from lunex.errors import (
    DeploymentAborted,
    DispatchError,
    OutcomeUnknownError,
    ResourceEstimationError,
    ValidationError,
)
from lunex.plan import PLACEHOLDER, ContractSpec, DeploymentPlan
from lunex.record import DeployedContract, DeploymentRecord
from lunex.signer import SignerContext
from lunex.tracker import ResourceLimits, TransactionRequest, TransactionTracker, TxState

logger = logging.getLogger(__name__)


def same_address(left: Any, right: Any) -> bool:
    return isinstance(left, str) and isinstance(right, str) and left.lower() == right.lower()


@dataclass
class ResourceEstimate:
    contract: str
    gas: Optional[int]
    gas_limit: int
    code_size: int
    code_size_limit: int
    placeholder_args: bool = False
    skipped: bool = False
    error: Optional[str] = None

    @property
    def within_budget(self) -> bool:
        if self.skipped:
            return True
        if self.error or self.gas is None:
            return False
        return self.gas <= self.gas_limit and self.code_size <= self.code_size_limit


class DeploymentOrchestrator:
    def __init__(self, chain, tracker: TransactionTracker, interfaces: Dict[str, ContractInterface],
                 signer: SignerContext, treasury: Optional[str] = None, min_balance: int = 0,
                 integrations: Sequence[IntegrationStep] = tuple(catalogue.INTEGRATIONS),
                 discard_unseen_pending: bool = False):
        self.chain = chain
        self.tracker = tracker
        self.interfaces = interfaces
        self.signer = signer
        if treasury is not None and not Web3.is_address(treasury):
            raise ValidationError(f"Treasury {treasury!r} is not an address")
        self.treasury = Web3.to_checksum_address(treasury) if treasury else signer.address
        self.min_balance = min_balance
        self.integrations = list(integrations)
        self.discard_unseen_pending = discard_unseen_pending

    # --- Phase 1: instantiation ---

    async def preflight(self, plan: DeploymentPlan):
        """Checks that need no transaction: plan order, interfaces, signer balance"""
        plan.validate()
        missing = [name for name in plan.names if name not in self.interfaces]
        if missing:
            raise ValidationError(f"No contract interface loaded for: {', '.join(missing)}")

        if self.min_balance:
            balance = await self.chain.balance_of(self.signer.address)
            logger.info(f"Deployer balance: {balance} wei")
            if balance < self.min_balance:
                raise ValidationError(
                    f"Insufficient balance on {self.signer.address}: {balance} < required {self.min_balance}"
                )

    async def deploy(self, plan: DeploymentPlan, record: DeploymentRecord, configure: bool = True,
                     initial_tokens: Iterable[InitialToken] = ()) -> DeploymentRecord:
        await self.preflight(plan)
        if record.deployed_by is None:
            record.deployed_by = self.signer.address
        self._settle_treasury(record)

        logger.info(f"Deploying {len(plan)} contracts on {record.network}: {', '.join(plan.names)}")
        for spec in plan:
            if record.is_finalized(spec.name):
                logger.info(f"Skipping {spec.name}: already finalized at {record.address_of(spec.name)}")
                continue
            if record.pending(spec.name) is not None and await self._reconcile_pending(spec, record):
                continue
            await self._deploy_one(spec, record)

        if configure:
            await self.configure_integrations(record, plan)
        tokens = list(initial_tokens)
        if tokens:
            await self.list_initial_tokens(record, tokens)
        return record

    def _settle_treasury(self, record: DeploymentRecord):
        # A finalized staking contract already carries its treasury
        if record.treasury and record.is_finalized(catalogue.STAKING):
            if not same_address(record.treasury, self.treasury):
                logger.warning(f"Keeping treasury {record.treasury} from the record instead of {self.treasury}")
                self.treasury = Web3.to_checksum_address(record.treasury)
            return
        if record.treasury != self.treasury:
            record.treasury = self.treasury
            record.save()

    def _resolve_args(self, spec: ContractSpec, record: Optional[DeploymentRecord],
                      allow_placeholders: bool = False) -> Tuple[List[Any], bool]:
        resolved = []
        used_placeholder = False
        for arg in spec.constructor_args:
            match = PLACEHOLDER.match(arg) if isinstance(arg, str) else None
            if match is None:
                resolved.append(arg)
                continue
            name = match.group(1)
            if name == "deployer":
                resolved.append(self.signer.address)
            elif name == "treasury":
                resolved.append(self.treasury)
            elif record is not None and record.is_finalized(name):
                resolved.append(record.address_of(name))
            elif allow_placeholders:
                resolved.append(ZERO_ADDRESS)
                used_placeholder = True
            else:
                raise ValidationError(f"{spec.name} needs the address of {name}, which is not deployed")
        return resolved, used_placeholder

    def _deploy_request(self, spec: ContractSpec, args: List[Any]) -> TransactionRequest:
        return TransactionRequest(
            payload=self.interfaces[spec.name].deploy(*args),
            signer=self.signer,
            limits=ResourceLimits(gas_limit=spec.budget.gas_limit),
            label=f"deploy {spec.name}",
        )

    async def _estimate(self, spec: ContractSpec, request: TransactionRequest) -> int:
        code_size = self.interfaces[spec.name].code_size
        if code_size > spec.budget.code_size_limit:
            raise ResourceEstimationError(
                request.label, f"bytecode is {code_size} bytes, budget is {spec.budget.code_size_limit}"
            )
        gas = await self.chain.estimate(request)
        if gas > spec.budget.gas_limit:
            raise ResourceEstimationError(request.label, f"needs {gas} gas, budget is {spec.budget.gas_limit}")
        logger.info(f"{request.label}: estimated {gas} gas (budget {spec.budget.gas_limit})")
        return gas

    async def _deploy_one(self, spec: ContractSpec, record: DeploymentRecord):
        args, _ = self._resolve_args(spec, record)
        request = self._deploy_request(spec, args)
        try:
            await self._estimate(spec, request)
        except ResourceEstimationError as e:
            raise DeploymentAborted("deploy", spec.name, e, record) from e

        logger.info(f"Deploying {spec.name} with args {args}")
        outcome = await self.tracker.submit_and_track(request)

        if outcome.succeeded and not outcome.contract_address:
            error = DispatchError(request.label, "no instantiation event in finalized receipt", outcome.tx_hash)
            raise DeploymentAborted("deploy", spec.name, error, record)
        try:
            outcome.raise_for_state()
        except OutcomeUnknownError as e:
            record.add(DeployedContract(
                name=spec.name,
                address=None,
                transaction_id=outcome.tx_hash,
                block_number=outcome.block_number,
                finalized=False,
            ))
            record.save()
            raise DeploymentAborted("deploy", spec.name, e, record) from e
        except DispatchError as e:
            raise DeploymentAborted("deploy", spec.name, e, record) from e

        record.add(DeployedContract(
            name=spec.name,
            address=outcome.contract_address,
            transaction_id=outcome.tx_hash,
            block_number=outcome.block_number,
            finalized=True,
        ))
        record.save()
        logger.info(f"{spec.name} deployed at {outcome.contract_address} (block {outcome.block_number})")

    async def _reconcile_pending(self, spec: ContractSpec, record: DeploymentRecord) -> bool:
        """Settle an instantiation left pending by an earlier run.

        Returns True when it turned out finalized and was promoted, False when
        the contract must be deployed again.
        """
        pending = record.pending(spec.name)
        logger.info(f"Reconciling pending {spec.name} instantiation {pending.transaction_id}")
        outcome = await self.tracker.reconcile(
            pending.transaction_id, self.interfaces[spec.name], label=f"deploy {spec.name}"
        )

        if outcome.state is TxState.FINALIZED and outcome.contract_address:
            record.add(DeployedContract(
                name=spec.name,
                address=outcome.contract_address,
                transaction_id=outcome.tx_hash,
                block_number=outcome.block_number,
                finalized=True,
            ))
            record.save()
            logger.info(f"{spec.name} was finalized at {outcome.contract_address}; promoted")
            return True

        if outcome.state is TxState.FAILED:
            logger.warning(f"Pending {spec.name} instantiation reverted: {outcome.dispatch_error}; redeploying")
            record.discard_pending(spec.name)
            record.save()
            return False

        if outcome.state is TxState.UNKNOWN and self.discard_unseen_pending:
            logger.warning(f"Pending {spec.name} transaction {outcome.tx_hash} not found; discarding")
            record.discard_pending(spec.name)
            record.save()
            return False

        error = OutcomeUnknownError(outcome.label, outcome.tx_hash, outcome.reason or outcome.state.value)
        raise DeploymentAborted("deploy", spec.name, error, record)

    async def dry_run(self, plan: DeploymentPlan, record: Optional[DeploymentRecord] = None) -> List[ResourceEstimate]:
        """Estimate every pending instantiation without submitting anything"""
        plan.validate()
        missing = [name for name in plan.names if name not in self.interfaces]
        if missing:
            raise ValidationError(f"No contract interface loaded for: {', '.join(missing)}")

        estimates = []
        for spec in plan:
            code_size = self.interfaces[spec.name].code_size
            estimate = ResourceEstimate(
                contract=spec.name,
                gas=None,
                gas_limit=spec.budget.gas_limit,
                code_size=code_size,
                code_size_limit=spec.budget.code_size_limit,
            )
            if record is not None and record.is_finalized(spec.name):
                estimate.skipped = True
                estimates.append(estimate)
                continue

            args, estimate.placeholder_args = self._resolve_args(spec, record, allow_placeholders=True)
            try:
                estimate.gas = await self.chain.estimate(self._deploy_request(spec, args))
            except ResourceEstimationError as e:
                estimate.error = e.reason
            logger.info(
                f"DRY RUN - {spec.name}: gas {estimate.gas} / {spec.budget.gas_limit}, "
                f"code {code_size} / {spec.budget.code_size_limit} bytes"
            )
            estimates.append(estimate)
        return estimates

    # --- Phase 2: integration wiring ---

    async def configure_integrations(self, record: DeploymentRecord,
                                     plan: Optional[DeploymentPlan] = None) -> List[str]:
        """Apply the setter sequence; steps already in place on-chain are skipped"""
        in_scope = set(plan.names) if plan is not None else set(self.interfaces)
        applied = []
        for step in self.integrations:
            if step.contract not in in_scope or step.target not in in_scope:
                continue
            interface = self.interfaces[step.contract]
            address = record.address_of(step.contract)
            target = record.address_of(step.target)

            if step.getter and interface.has_method(step.getter):
                current = await self.chain.query(interface, address, step.getter)
                if same_address(current, target):
                    logger.info(f"{step.describe()} already configured; skipping")
                    continue

            request = TransactionRequest(
                payload=interface.call(step.setter, target, address=address),
                signer=self.signer,
                limits=ResourceLimits(gas_limit=catalogue.INTEGRATION_GAS),
                label=step.describe(),
            )
            await self._submit_phase_step("configure_integrations", step.contract, request, record)
            applied.append(step.describe())

        logger.info(f"Integrations configured: {len(applied)} applied")
        return applied

    async def _submit_phase_step(self, phase: str, contract: str, request: TransactionRequest,
                                 record: DeploymentRecord):
        try:
            await self.chain.estimate(request)
            outcome = await self.tracker.submit_and_track(request)
            outcome.raise_for_state()
        except (ResourceEstimationError, DispatchError, OutcomeUnknownError) as e:
            raise DeploymentAborted(phase, contract, e, record) from e
        return outcome

    # --- Phase 3: initial token listing ---

    async def list_initial_tokens(self, record: DeploymentRecord, tokens: Iterable[InitialToken]) -> List[str]:
        """Admin-list the initial token set on the staking contract; listed tokens are skipped"""
        staking = self.interfaces[catalogue.STAKING]
        staking_address = record.address_of(catalogue.STAKING)

        to_list = []
        for token in tokens:
            if not Web3.is_address(token.address):
                raise ValidationError(f"Initial token {token.address!r} is not an address")
            address = Web3.to_checksum_address(token.address)
            if await self.chain.query(staking, staking_address, "isProjectApproved", (address,)):
                logger.info(f"{address} already listed; skipping")
                continue
            to_list.append((address, token.reason))

        if not to_list:
            logger.info("No initial tokens to list")
            return []
        if len(to_list) > catalogue.MAX_LISTING_BATCH:
            raise ValidationError(f"At most {catalogue.MAX_LISTING_BATCH} tokens per batch, got {len(to_list)}")

        if len(to_list) == 1:
            address, reason = to_list[0]
            payload = staking.call("adminListToken", address, reason, address=staking_address)
            gas = catalogue.LISTING_GAS
        else:
            payload = staking.call(
                "adminBatchListTokens", [[address, reason] for address, reason in to_list], address=staking_address
            )
            gas = catalogue.BATCH_LISTING_GAS
        request = TransactionRequest(payload, self.signer, ResourceLimits(gas_limit=gas))
        await self._submit_phase_step("list_initial_tokens", catalogue.STAKING, request, record)

        confirmed = []
        for address, _ in to_list:
            if await self.chain.query(staking, staking_address, "isProjectApproved", (address,)):
                confirmed.append(address)
            else:
                logger.error(f"Token {address} was not listed correctly")
        logger.info(f"{len(confirmed)}/{len(to_list)} initial tokens listed")
        return confirmed
