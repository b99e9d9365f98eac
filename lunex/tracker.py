"""
Transaction lifecycle tracking.

``TransactionTracker.submit`` signs and sends a request exactly once and
returns a ``TrackedTransaction``: a small state machine whose state only
moves forward (Submitted -> IncludedInBlock -> Finalized | Failed, with
Unknown reachable from any non-terminal state). ``await_terminal()`` is the
single suspension point callers wait on.

Inclusion in a block is never treated as confirmation. Events decoded at
inclusion are cached for reporting, and the outcome is only decided once the
block is finalized and the receipt has been re-checked for a revert.

Requests from the same signer are serialized: request N+1 is not sent until
request N is terminal, so nonces are consumed in order. Different signers
proceed concurrently. Nothing is retried automatically.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from lunex.chain import INSTANTIATED, UNKNOWN_REVERT, ChainEvent, Receipt
from lunex.contracts.interface import ContractCall, ContractInterface
from lunex.errors import ChainConnectionError, DispatchError, OutcomeUnknownError
from lunex.signer import SignerContext

logger = logging.getLogger(__name__)


class TxState(str, Enum):
    SUBMITTED = "submitted"
    INCLUDED = "included_in_block"
    FINALIZED = "finalized"
    FAILED = "failed"
    UNKNOWN = "unknown"


TERMINAL_STATES = frozenset({TxState.FINALIZED, TxState.FAILED, TxState.UNKNOWN})

_NEXT_STATES = {
    TxState.SUBMITTED: {TxState.INCLUDED, TxState.UNKNOWN},
    TxState.INCLUDED: {TxState.FINALIZED, TxState.FAILED, TxState.UNKNOWN},
}


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class ResourceLimits:
    gas_limit: Optional[int] = None
    value: int = 0


@dataclass(frozen=True)
class TransactionRequest:
    payload: ContractCall
    signer: SignerContext
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    label: str = ""

    def __post_init__(self):
        if not self.label:
            object.__setattr__(self, "label", self.payload.describe())

    @property
    def interface(self) -> ContractInterface:
        return self.payload.interface


@dataclass
class TransactionOutcome:
    state: TxState
    tx_hash: Optional[str] = None
    label: str = ""
    block_number: Optional[int] = None
    events: List[ChainEvent] = field(default_factory=list)
    dispatch_error: Optional[str] = None
    contract_address: Optional[str] = None
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state is TxState.FINALIZED

    def find_event(self, name: str) -> Optional[ChainEvent]:
        for event in self.events:
            if event.name == name:
                return event
        return None

    def raise_for_state(self):
        """Raise the matching error unless the transaction finalized successfully"""
        if self.state is TxState.FAILED:
            raise DispatchError(self.label, self.dispatch_error or "reverted", self.tx_hash)
        if self.state is not TxState.FINALIZED:
            raise OutcomeUnknownError(self.label, self.tx_hash, self.reason)
        return self


class TrackedTransaction:
    """Handle for one submitted transaction"""

    def __init__(self, request: TransactionRequest, tx_hash: str):
        self.request = request
        self.tx_hash = tx_hash
        self.state = TxState.SUBMITTED
        self.history: List[TxState] = [TxState.SUBMITTED]
        self.included_block: Optional[int] = None
        self.included_events: List[ChainEvent] = []
        self._outcome: Optional[TransactionOutcome] = None
        self._terminal = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def label(self) -> str:
        return self.request.label

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def _advance(self, state: TxState):
        if state not in _NEXT_STATES.get(self.state, set()):
            raise InvalidTransition(f"{self.label}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        logger.info(f"{self.label} [{self.tx_hash}] -> {state.value}")

    def mark_included(self, receipt: Receipt, events: List[ChainEvent]):
        if self.state is TxState.SUBMITTED:
            self._advance(TxState.INCLUDED)
        # A reorg can move the transaction to another block; keep the latest sighting
        self.included_block = receipt.block_number
        self.included_events = list(events)

    def resolve(self, state: TxState, **details) -> TransactionOutcome:
        if self.done:
            return self._outcome
        self._advance(state)
        self._outcome = TransactionOutcome(
            state=state,
            tx_hash=self.tx_hash,
            label=self.label,
            block_number=details.pop("block_number", self.included_block),
            **details,
        )
        self._terminal.set()
        return self._outcome

    def cancel(self):
        """Stop observing. The transaction itself cannot be revoked; the outcome becomes Unknown."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        elif not self.done:
            self.resolve(TxState.UNKNOWN, reason="observation cancelled")

    async def await_terminal(self, timeout: Optional[float] = None) -> TransactionOutcome:
        try:
            await asyncio.wait_for(self._terminal.wait(), timeout)
        except asyncio.TimeoutError:
            self.cancel()
            await self._terminal.wait()
        return self._outcome


class TransactionTracker:
    def __init__(self, chain, poll_interval: float = 2.0, timeout: float = 600.0):
        self.chain = chain
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._signer_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, signer: SignerContext) -> asyncio.Lock:
        return self._signer_locks.setdefault(signer.address.lower(), asyncio.Lock())

    async def submit(self, request: TransactionRequest) -> TrackedTransaction:
        """Send the request once and start observing it.

        Waits until every earlier request from the same signer is terminal.
        """
        lock = self._lock_for(request.signer)
        await lock.acquire()
        try:
            tx_hash = await self.chain.send(request)
        except BaseException:
            lock.release()
            raise

        handle = TrackedTransaction(request, tx_hash)

        def _on_watch_done(task: asyncio.Task):
            try:
                if not handle.done:
                    if task.cancelled():
                        reason = "observation cancelled"
                    else:
                        reason = f"observation failed: {task.exception()!r}"
                        logger.error(f"{handle.label}: {reason}")
                    handle.resolve(TxState.UNKNOWN, reason=reason)
            finally:
                lock.release()

        handle._task = asyncio.create_task(self._watch(handle))
        handle._task.add_done_callback(_on_watch_done)
        return handle

    async def submit_and_track(self, request: TransactionRequest) -> TransactionOutcome:
        handle = await self.submit(request)
        return await handle.await_terminal()

    async def _watch(self, handle: TrackedTransaction):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        interface = handle.request.interface
        try:
            while not handle.done:
                receipt = await self.chain.receipt(handle.tx_hash)
                if receipt is not None:
                    handle.mark_included(receipt, self.chain.decode_events(receipt, interface))
                    if receipt.block_number <= await self.chain.finalized_block():
                        await self._finalize(handle, interface)
                        return
                if loop.time() >= deadline:
                    handle.resolve(TxState.UNKNOWN, reason=f"not finalized within {self.timeout:.0f}s")
                    return
                await asyncio.sleep(self.poll_interval)
        except ChainConnectionError as e:
            logger.warning(f"{handle.label}: lost observation of {handle.tx_hash}: {e}")
            handle.resolve(TxState.UNKNOWN, reason=str(e))
        except asyncio.CancelledError:
            handle.resolve(TxState.UNKNOWN, reason="observation cancelled")
            raise

    async def _finalize(self, handle: TrackedTransaction, interface: Optional[ContractInterface]):
        # Re-read the receipt: the finalized one is the only one that counts
        receipt = await self.chain.receipt(handle.tx_hash)
        if receipt is None:
            handle.resolve(TxState.UNKNOWN, reason="receipt disappeared at finalization")
            return
        if receipt.reverted:
            reason = await self._revert_reason(handle.tx_hash)
            logger.error(f"{handle.label} reverted in block {receipt.block_number}: {reason}")
            handle.resolve(TxState.FAILED, block_number=receipt.block_number, dispatch_error=reason)
            return

        events = self.chain.decode_events(receipt, interface)
        created = next((e.address for e in events if e.name == INSTANTIATED), None)
        handle.resolve(
            TxState.FINALIZED,
            block_number=receipt.block_number,
            events=events,
            contract_address=created,
        )

    async def _revert_reason(self, tx_hash: str) -> str:
        """A finalized status-0 receipt is Failed whether or not its reason can be recovered"""
        try:
            return await self.chain.revert_reason(tx_hash)
        except ChainConnectionError as e:
            logger.warning(f"Revert reason for {tx_hash} unavailable: {e}")
            return UNKNOWN_REVERT

    async def reconcile(self, tx_hash: str, interface: Optional[ContractInterface] = None,
                        label: str = "") -> TransactionOutcome:
        """Answer from a direct chain query; used after an Unknown outcome"""
        label = label or f"reconcile {tx_hash}"
        receipt = await self.chain.receipt(tx_hash)
        if receipt is None:
            return TransactionOutcome(TxState.UNKNOWN, tx_hash, label, reason="transaction not found on chain")

        if receipt.block_number > await self.chain.finalized_block():
            return TransactionOutcome(
                TxState.INCLUDED, tx_hash, label,
                block_number=receipt.block_number,
                events=self.chain.decode_events(receipt, interface),
            )
        if receipt.reverted:
            return TransactionOutcome(
                TxState.FAILED, tx_hash, label,
                block_number=receipt.block_number,
                dispatch_error=await self._revert_reason(tx_hash),
            )
        events = self.chain.decode_events(receipt, interface)
        return TransactionOutcome(
            TxState.FINALIZED, tx_hash, label,
            block_number=receipt.block_number,
            events=events,
            contract_address=next((e.address for e in events if e.name == INSTANTIATED), None),
        )
