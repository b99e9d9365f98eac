"""
Chain gateway: the only component that talks to the RPC node.

Wraps ``AsyncWeb3`` and exposes the small set of reads and writes the
tracker, orchestrator, verifier and governance workflow need. Transport
failures surface as ``ChainConnectionError``; reverts seen during estimation
surface as ``ResourceEstimationError``.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp
from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TransactionNotFound, Web3RPCError
from web3.logs import DISCARD
from web3.middleware import ExtraDataToPOAMiddleware

from lunex.config import NetworkProfile
from lunex.contracts.interface import ContractCall, ContractInterface
from lunex.errors import ChainConnectionError, QueryError, ResourceEstimationError

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
INSTANTIATED = "Instantiated"
UNKNOWN_REVERT = "execution reverted"

_TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


@dataclass(frozen=True)
class ChainEvent:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    address: Optional[str] = None


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    block_number: int
    block_hash: str
    status: int
    contract_address: Optional[str] = None
    raw: Any = None

    @property
    def reverted(self) -> bool:
        return self.status == 0


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return HexBytes(value).to_0x_hex()
    return str(value)


def _rpc(func):
    """Translate transport failures into ChainConnectionError"""
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except _TRANSPORT_ERRORS as e:
            raise ChainConnectionError(f"{func.__name__} failed against {self.profile.rpc_url}: {e}") from e
    return wrapper


class Web3Gateway:
    def __init__(self, w3: AsyncWeb3, profile: NetworkProfile):
        self.w3 = w3
        self.profile = profile

    @classmethod
    async def connect(cls, profile: NetworkProfile, request_timeout: float = 30.0) -> "Web3Gateway":
        """Connect to the profile's RPC endpoint and check the chain id"""
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(profile.rpc_url, request_kwargs={"timeout": request_timeout}))
        if profile.poa:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        gateway = cls(w3, profile)
        try:
            connected = await w3.is_connected()
        except _TRANSPORT_ERRORS as e:
            raise ChainConnectionError(f"Could not connect to RPC URL: {profile.rpc_url}: {e}") from e
        if not connected:
            raise ChainConnectionError(f"Could not connect to RPC URL: {profile.rpc_url}")

        chain_id = await gateway.chain_id()
        if profile.chain_id is not None and chain_id != profile.chain_id:
            raise ChainConnectionError(
                f"{profile.name} expects chain id {profile.chain_id}, node reports {chain_id}"
            )
        logger.info(f"Connected to {profile.name} at {profile.rpc_url} (chain id {chain_id})")
        return gateway

    async def close(self):
        provider = self.w3.provider
        if hasattr(provider, "disconnect"):
            await provider.disconnect()

    def _contract(self, interface: ContractInterface, address: Optional[str] = None):
        if address is None:
            return self.w3.eth.contract(abi=list(interface.abi), bytecode=interface.bytecode)
        return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=list(interface.abi))

    def _bound(self, call: ContractCall):
        if call.is_deployment:
            return self._contract(call.interface).constructor(*call.args)
        if call.address is None:
            raise ValueError(f"{call.describe()} has no target address")
        return getattr(self._contract(call.interface, call.address).functions, call.method)(*call.args)

    # --- Reads ---

    @_rpc
    async def chain_id(self) -> int:
        return await self.w3.eth.chain_id

    @_rpc
    async def chain_time(self) -> int:
        """Timestamp of the latest block; the clock governance rules run on"""
        block = await self.w3.eth.get_block("latest")
        return int(block["timestamp"])

    @_rpc
    async def balance_of(self, address: str) -> int:
        return await self.w3.eth.get_balance(AsyncWeb3.to_checksum_address(address))

    @_rpc
    async def code_at(self, address: str) -> bytes:
        return bytes(await self.w3.eth.get_code(AsyncWeb3.to_checksum_address(address)))

    @_rpc
    async def query(self, interface: ContractInterface, address: str, method: str, args=()) -> Any:
        args = interface.query(method).normalize_args(args)
        contract = self._contract(interface, address)
        try:
            return await getattr(contract.functions, method)(*args).call()
        except (ContractLogicError, BadFunctionCallOutput) as e:
            raise QueryError(f"{interface.name}.{method} at {address}: {e}") from e

    @_rpc
    async def receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            raw = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return Receipt(
            tx_hash=tx_hash,
            block_number=raw["blockNumber"],
            block_hash=_hex(raw["blockHash"]),
            status=raw["status"],
            contract_address=raw.get("contractAddress"),
            raw=raw,
        )

    @_rpc
    async def finalized_block(self) -> int:
        if self.profile.finality_depth is None:
            block = await self.w3.eth.get_block("finalized")
            return int(block["number"])
        latest = await self.w3.eth.block_number
        return latest - self.profile.finality_depth

    # --- Writes ---

    def _tx_params(self, request) -> Dict[str, Any]:
        params: Dict[str, Any] = {"from": request.signer.address}
        if request.limits.value:
            params["value"] = request.limits.value
        return params

    @_rpc
    async def estimate(self, request) -> int:
        """Dry-run the request; no state change"""
        try:
            return await self._bound(request.payload).estimate_gas(self._tx_params(request))
        except (ContractLogicError, Web3RPCError) as e:
            raise ResourceEstimationError(request.label, str(e)) from e

    @_rpc
    async def send(self, request) -> str:
        """Sign and submit the request once; returns the transaction hash"""
        signer = request.signer
        params = self._tx_params(request)
        params["nonce"] = await self.w3.eth.get_transaction_count(signer.address, "pending")
        params["chainId"] = signer.chain_id or await self.w3.eth.chain_id
        params["gasPrice"] = await self.w3.eth.gas_price
        if request.limits.gas_limit:
            params["gas"] = request.limits.gas_limit

        tx = await self._bound(request.payload).build_transaction(params)
        signed = signer.sign(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info(f"{request.label} sent from {signer.address} with nonce {params['nonce']}: {_hex(tx_hash)}")
        return _hex(tx_hash)

    @_rpc
    async def revert_reason(self, tx_hash: str) -> str:
        """Replay a reverted transaction at its block to recover the reason"""
        try:
            tx = await self.w3.eth.get_transaction(tx_hash)
            replay = {"from": tx["from"], "data": tx["input"], "value": tx["value"]}
            if tx.get("to"):
                replay["to"] = tx["to"]
            await self.w3.eth.call(replay, block_identifier=tx["blockNumber"])
        except ContractLogicError as e:
            return str(e)
        except (Web3RPCError, TransactionNotFound, ValueError) as e:
            # Pruned nodes cannot replay old blocks; the receipt status still decides
            logger.warning(f"Could not replay {tx_hash} for its revert reason: {e}")
        return UNKNOWN_REVERT

    def decode_events(self, receipt: Receipt, interface: Optional[ContractInterface] = None) -> List[ChainEvent]:
        events: List[ChainEvent] = []
        if receipt.contract_address:
            events.append(ChainEvent(INSTANTIATED, {"contract": receipt.contract_address}, receipt.contract_address))
        if interface is None or receipt.raw is None:
            return events

        contract = self._contract(interface)
        for name in sorted(interface.events):
            for log in getattr(contract.events, name)().process_receipt(receipt.raw, errors=DISCARD):
                events.append(ChainEvent(name, dict(log["args"]), log["address"]))
        return events
