"""Web3 chain connection: log-polling subscriptions, read calls and transfer simulation."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from web3 import HTTPProvider, Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

import config
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)


def _event_topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature)).lower()


PAIR_CREATED_TOPIC = _event_topic("PairCreated(address,address,address,uint256)")
MINT_TOPIC = _event_topic("Mint(address,uint256,uint256)")
TRANSFER_TOPIC = _event_topic("Transfer(address,address,uint256)")
SWAP_TOPIC = _event_topic("Swap(address,uint256,uint256,uint256,uint256,address)")


class OnChainRPCError(RuntimeError):
    """Raised when a single RPC read or simulation fails."""


class ContractCallReverted(OnChainRPCError):
    """The node answered, but the call reverted or returned nothing decodable."""


class ChainConnectionLost(OnChainRPCError):
    """Raised when the polling transport cannot reach any provider. Fatal to the process."""


def _as_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value or "").strip().lower()
    if text.startswith("0x"):
        return text
    return "0x" + text


def _log_field(row: Any, name: str, default: Any = None) -> Any:
    if hasattr(row, "get"):
        return row.get(name, default)
    return getattr(row, name, default)


@dataclass
class ChainEvent:
    address: str
    topic: str
    topics: list[str] = field(default_factory=list)
    data: str = "0x"
    block_number: int = 0
    tx_hash: str = ""
    log_index: int = 0

    @classmethod
    def from_log(cls, row: Any) -> "ChainEvent | None":
        topics = [_as_hex(t) for t in (_log_field(row, "topics", []) or [])]
        if not topics:
            return None
        return cls(
            address=normalize_address(_log_field(row, "address", "")),
            topic=topics[0],
            topics=topics,
            data=_as_hex(_log_field(row, "data", "0x")),
            block_number=int(_log_field(row, "blockNumber", 0) or 0),
            tx_hash=_as_hex(_log_field(row, "transactionHash", "")),
            log_index=int(_log_field(row, "logIndex", 0) or 0),
        )

    def word(self, index: int) -> int:
        """Unsigned integer held in 32-byte data slot ``index``; 0 when the slot is missing."""
        clean = self.data[2:] if self.data.startswith("0x") else self.data
        slot = clean[index * 64 : (index + 1) * 64]
        if len(slot) < 64:
            return 0
        return int(slot, 16)

    def word_address(self, index: int) -> str:
        clean = self.data[2:] if self.data.startswith("0x") else self.data
        slot = clean[index * 64 : (index + 1) * 64]
        if len(slot) < 64:
            return ""
        return f"0x{slot[-40:]}"

    def topic_address(self, index: int) -> str:
        if index >= len(self.topics):
            return ""
        clean = self.topics[index].replace("0x", "").rjust(64, "0")
        return f"0x{clean[-40:]}"


EventHandler = Callable[[ChainEvent], "Awaitable[None] | None"]


class Subscription:
    """A live (address, topic) listener. ``unsubscribe`` is idempotent."""

    def __init__(self, connection: "ChainConnection", address: str, topic: str, handler: EventHandler) -> None:
        self._connection = connection
        self.address = normalize_address(address)
        self.topic = str(topic).lower()
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._connection._remove(self)


class ChainConnection:
    def __init__(
        self,
        providers: list[str] | None = None,
        *,
        poll_interval_seconds: float | None = None,
        block_chunk: int | None = None,
        finality_blocks: int | None = None,
    ) -> None:
        if providers is None:
            providers = [p for p in [config.RPC_PRIMARY, config.RPC_SECONDARY] if p]
        self.providers = list(providers)
        self.provider_index = 0
        self.poll_interval_seconds = float(
            poll_interval_seconds if poll_interval_seconds is not None else config.CHAIN_POLL_INTERVAL_SECONDS
        )
        self.block_chunk = max(1, int(block_chunk if block_chunk is not None else config.CHAIN_BLOCK_CHUNK))
        self.finality_blocks = max(
            0, int(finality_blocks if finality_blocks is not None else config.CHAIN_FINALITY_BLOCKS)
        )
        self.web3 = self._build_web3()
        self.last_processed_block: int | None = None
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self.events_delivered = 0
        self.handler_errors = 0

    def _build_web3(self) -> Web3:
        if not self.providers:
            raise OnChainRPCError("RPC_PRIMARY/RPC_SECONDARY are not configured for on-chain source.")
        provider = self.providers[self.provider_index]
        return Web3(
            HTTPProvider(
                provider,
                request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS},
            )
        )

    def _rotate_provider(self) -> None:
        if len(self.providers) <= 1:
            return
        self.provider_index = (self.provider_index + 1) % len(self.providers)
        self.web3 = self._build_web3()

    async def _rpc_with_backoff(self, call: Callable[[], Any], op_name: str) -> Any:
        delays = [1, 2, 4]
        last_error: Exception | None = None
        for attempt, delay in enumerate(delays, start=1):
            try:
                return await asyncio.to_thread(call)
            except Exception as exc:  # pragma: no cover - network/runtime dependent
                last_error = exc
                if attempt < len(delays):
                    logger.warning("RPC_RETRY op=%s attempt=%s/%s error=%s", op_name, attempt, len(delays), exc)
                    self._rotate_provider()
                    await asyncio.sleep(delay)
        raise ChainConnectionLost(f"{op_name} failed after retries: {last_error}")

    async def _rpc_once(self, call: Callable[[], Any], op_name: str) -> Any:
        try:
            return await asyncio.to_thread(call)
        except (ContractLogicError, BadFunctionCallOutput) as exc:
            raise ContractCallReverted(f"{op_name} reverted: {exc}") from exc
        except Exception as exc:
            raise OnChainRPCError(f"{op_name} failed: {exc}") from exc

    # Subscriptions

    def subscribe(self, address: str, topic: str, handler: EventHandler) -> Subscription:
        sub = Subscription(self, address, topic, handler)
        self._subscriptions[sub.address].append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        rows = self._subscriptions.get(sub.address)
        if not rows:
            return
        if sub in rows:
            rows.remove(sub)
        if not rows:
            self._subscriptions.pop(sub.address, None)

    def subscription_count(self) -> int:
        return sum(len(rows) for rows in self._subscriptions.values())

    def snapshot(self) -> dict[str, int]:
        return {
            "subscriptions": self.subscription_count(),
            "addresses": len(self._subscriptions),
            "last_block": int(self.last_processed_block or 0),
            "events_delivered": self.events_delivered,
            "handler_errors": self.handler_errors,
        }

    def _spawn_handler(self, sub: Subscription, outcome: Awaitable[None]) -> None:
        task = asyncio.ensure_future(outcome)
        self._handler_tasks.add(task)

        def _done(t: asyncio.Task[None]) -> None:
            self._handler_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self.handler_errors += 1
                logger.error("HANDLER_ERROR address=%s topic=%s error=%r", sub.address, sub.topic, exc)

        task.add_done_callback(_done)

    def dispatch(self, event: ChainEvent) -> int:
        """Deliver one decoded log to every live subscription matching its address and topic0."""
        delivered = 0
        for sub in list(self._subscriptions.get(event.address, [])):
            # A handler earlier in this batch may have torn this one down.
            if not sub.active or sub.topic != event.topic:
                continue
            delivered += 1
            try:
                outcome = sub.handler(event)
            except Exception as exc:
                self.handler_errors += 1
                logger.exception("HANDLER_ERROR address=%s topic=%s error=%s", sub.address, sub.topic, exc)
                continue
            if inspect.isawaitable(outcome):
                self._spawn_handler(sub, outcome)
        self.events_delivered += delivered
        return delivered

    async def poll_once(self) -> int:
        latest_raw = int(await self._rpc_with_backoff(lambda: self.web3.eth.block_number, "eth_blockNumber"))
        latest_block = max(0, latest_raw - self.finality_blocks)
        if self.last_processed_block is None:
            # Start at the head; history before launch is not replayed.
            self.last_processed_block = latest_block
            return 0
        if latest_block <= self.last_processed_block:
            return 0

        delivered = 0
        from_block = self.last_processed_block + 1
        for start in range(from_block, latest_block + 1, self.block_chunk):
            end = min(latest_block, start + self.block_chunk - 1)
            delivered += await self._process_chunk(start, end)
            self.last_processed_block = end
        return delivered

    def _subscription_keys(self) -> set[tuple[str, str]]:
        return {(sub.address, sub.topic) for rows in self._subscriptions.values() for sub in rows if sub.active}

    async def _process_chunk(self, start: int, end: int) -> int:
        """Deliver every matching log in [start, end].

        Handlers may subscribe to new contracts while the chunk is being
        delivered (a new pair is usually minted in the block that created it),
        so the range is queried again for keys added since the last query.
        """
        delivered = 0
        queried: set[tuple[str, str]] = set()
        pending = self._subscription_keys()
        while pending:
            rows = await self._get_logs(pending, start, end)
            queried |= pending
            spawned_before = set(self._handler_tasks)
            for row in rows:
                event = ChainEvent.from_log(row)
                if event is None or (event.address, event.topic) not in pending:
                    continue
                delivered += self.dispatch(event)
            spawned = self._handler_tasks - spawned_before
            if spawned:
                await asyncio.wait(spawned, timeout=max(1.0, self.poll_interval_seconds))
            pending = self._subscription_keys() - queried
            if pending:
                logger.debug("CHAIN_CHUNK_REQUERY from=%s to=%s keys=%s", start, end, len(pending))
        return delivered

    async def _get_logs(self, keys: set[tuple[str, str]], start: int, end: int) -> list[Any]:
        """eth_getLogs for ``keys`` over [start, end]; a rejected range is retried once as two halves.

        Failures raise OnChainRPCError, which is not fatal: the range is
        retried on the next poll.
        """
        params = {
            "address": [Web3.to_checksum_address(a) for a in sorted({address for address, _ in keys})],
            "fromBlock": start,
            "toBlock": end,
            "topics": [sorted({topic for _, topic in keys})],
        }
        try:
            return list(await self._rpc_once(lambda: self.web3.eth.get_logs(params), f"eth_getLogs[{start}-{end}]"))
        except OnChainRPCError as exc:
            if end <= start:
                raise
            logger.warning("CHAIN_GETLOGS_SPLIT from=%s to=%s error=%s", start, end, exc)
        middle = (start + end) // 2
        rows: list[Any] = []
        for low, high in ((start, middle), (middle + 1, end)):
            half = dict(params, fromBlock=low, toBlock=high)
            rows.extend(await self._rpc_once(lambda p=half: self.web3.eth.get_logs(p), f"eth_getLogs[{low}-{high}]"))
        return rows

    async def run(self) -> None:
        """Poll forever. Only ChainConnectionLost escapes."""
        logger.info(
            "CHAIN_POLL_START providers=%s interval=%ss chunk=%s finality=%s",
            len(self.providers),
            self.poll_interval_seconds,
            self.block_chunk,
            self.finality_blocks,
        )
        while True:
            try:
                await self.poll_once()
            except ChainConnectionLost:
                raise
            except OnChainRPCError as exc:
                logger.warning("CHAIN_POLL_ERROR last_block=%s error=%s", self.last_processed_block, exc)
            await asyncio.sleep(self.poll_interval_seconds)

    async def close(self) -> None:
        for task in list(self._handler_tasks):
            task.cancel()
        if self._handler_tasks:
            await asyncio.gather(*self._handler_tasks, return_exceptions=True)
        self._subscriptions.clear()

    # Read-only calls

    async def get_code(self, address: str) -> bytes:
        code = await self._rpc_once(
            lambda: self.web3.eth.get_code(Web3.to_checksum_address(address)),
            f"eth_getCode[{address}]",
        )
        return bytes(code or b"")

    async def call_function(self, address: str, abi: list[dict[str, Any]], fn_name: str, *args: Any) -> Any:
        def _call() -> Any:
            contract = self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
            return getattr(contract.functions, fn_name)(*args).call()

        return await self._rpc_once(_call, f"{fn_name}[{address}]")

    async def simulate_transfer(
        self,
        token_address: str,
        abi: list[dict[str, Any]],
        sender: str,
        recipient: str,
        amount: int,
    ) -> bool:
        """eth_call ``transfer(recipient, amount)`` as ``sender``. Nothing is signed or broadcast."""
        def _call() -> Any:
            contract = self.web3.eth.contract(address=Web3.to_checksum_address(token_address), abi=abi)
            tx = {"from": Web3.to_checksum_address(sender)}
            return contract.functions.transfer(Web3.to_checksum_address(recipient), int(amount)).call(tx)

        result = await self._rpc_once(_call, f"simulate_transfer[{token_address}]")
        return bool(result)
