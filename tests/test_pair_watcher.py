from __future__ import annotations

import asyncio
import unittest

from monitor.chain_connection import MINT_TOPIC, SWAP_TOPIC, TRANSFER_TOPIC, ChainConnection, ChainEvent
from monitor.onchain_factory import PairCandidate
from monitor.pair_watcher import PairWatchRegistry, WatchState, select_target_token
from monitor.prebuy_pipeline import CheckResult
from trading.dispatch_queue import BuyTask

WBNB = "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c"
TOKEN = "0x1111111111111111111111111111111111111111"
OTHER = "0x3333333333333333333333333333333333333333"
PAIR = "0x2222222222222222222222222222222222222222"


def _topic(address: str) -> str:
    return "0x" + address.replace("0x", "").rjust(64, "0")


def _event(topic: str, pair: str = PAIR) -> ChainEvent:
    return ChainEvent(
        address=pair,
        topic=topic,
        topics=[topic, _topic(OTHER), _topic(pair)],
        data="0x" + f"{10**18:064x}" + f"{10**18:064x}",
        block_number=100,
    )


def _candidate(token0: str = WBNB, token1: str = TOKEN, pair: str = PAIR) -> PairCandidate:
    return PairCandidate(
        pair_address=pair,
        token0=token0,
        token1=token1,
        created_block=99,
        detected_ts="2026-01-01T00:00:00+00:00",
        factory_address="0xca143ce32fe78f1f7019d7d551a6402fc5350c73",
    )


class _StubPipeline:
    def __init__(self, result: CheckResult, gate: asyncio.Event | None = None) -> None:
        self.result = result
        self.gate = gate
        self.runs: list[tuple[str, str | None]] = []

    async def run(self, token_address: str, *, holder_address: str | None = None) -> CheckResult:
        self.runs.append((token_address, holder_address))
        if self.gate is not None:
            await self.gate.wait()
        return self.result


class _StubQueue:
    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.tasks: list[BuyTask] = []

    def submit(self, task: BuyTask) -> bool:
        if not self.accept:
            return False
        self.tasks.append(task)
        return True


PASS = CheckResult(passed=True, reasons=[], metadata={"token_address": TOKEN, "symbol": "TKN"})
FAIL = CheckResult(passed=False, reasons=["token missing symbol/decimals"], metadata={"token_address": TOKEN})


class SelectTargetTokenTests(unittest.TestCase):
    def test_picks_non_base_side(self) -> None:
        self.assertEqual(select_target_token(WBNB, TOKEN, WBNB), TOKEN)
        self.assertEqual(select_target_token(TOKEN.upper().replace("0X", "0x"), WBNB.upper().replace("0X", "0x"), WBNB), TOKEN)

    def test_rejects_pairs_without_or_with_two_base_sides(self) -> None:
        self.assertIsNone(select_target_token(TOKEN, OTHER, WBNB))
        self.assertIsNone(select_target_token(WBNB, WBNB, WBNB))

    def test_without_filter_targets_token0(self) -> None:
        self.assertEqual(select_target_token(TOKEN, OTHER, ""), TOKEN)


class PairWatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.chain = ChainConnection(providers=["http://127.0.0.1:8545"])
        self.queue = _StubQueue()

    async def asyncTearDown(self) -> None:
        await self.chain.close()

    def _registry(self, pipeline: _StubPipeline, timeout: float = 30.0, base: str = WBNB) -> PairWatchRegistry:
        return PairWatchRegistry(
            self.chain,
            pipeline,  # type: ignore[arg-type]
            self.queue,  # type: ignore[arg-type]
            base_asset_address=base,
            timeout_seconds=timeout,
            buy_amount_native="0.05",
            slippage_fraction=0.25,
            deadline_seconds=45,
        )

    async def test_base_asset_filter_skips_without_creating_watch(self) -> None:
        registry = self._registry(_StubPipeline(PASS))
        self.assertIsNone(registry.on_pair_created(_candidate(TOKEN, OTHER)))
        self.assertIsNone(registry.on_pair_created(_candidate(WBNB, WBNB)))
        self.assertEqual(registry.active_count, 0)
        self.assertEqual(registry.skipped, 2)
        self.assertEqual(self.chain.subscription_count(), 0)

    async def test_watch_subscribes_to_mint_and_transfer(self) -> None:
        registry = self._registry(_StubPipeline(PASS))
        watcher = registry.on_pair_created(_candidate())
        self.assertIsNotNone(watcher)
        assert watcher is not None
        self.assertEqual(watcher.state, WatchState.WATCHING)
        self.assertEqual(watcher.watch.target_token, TOKEN)
        self.assertEqual(self.chain.subscription_count(), 2)
        self.assertAlmostEqual(watcher.watch.timeout_at - watcher.watch.created_at, 30.0, places=3)
        registry.close()
        self.assertEqual(self.chain.subscription_count(), 0)

    async def test_both_trigger_kinds_run_pipeline_once(self) -> None:
        pipeline = _StubPipeline(PASS)
        registry = self._registry(pipeline)
        watcher = registry.on_pair_created(_candidate())
        assert watcher is not None

        self.assertEqual(self.chain.dispatch(_event(MINT_TOPIC)), 1)
        self.assertEqual(watcher.state, WatchState.TRIGGERED)
        self.assertEqual(self.chain.subscription_count(), 0)
        self.assertEqual(self.chain.dispatch(_event(TRANSFER_TOPIC)), 0)
        # A handler that was already in flight when the listeners came down.
        watcher._on_liquidity(_event(TRANSFER_TOPIC))

        await asyncio.wait_for(watcher.wait_closed(), timeout=2.0)
        self.assertEqual(len(pipeline.runs), 1)
        self.assertEqual(pipeline.runs[0], (TOKEN, PAIR))
        self.assertEqual(watcher.pipeline_runs, 1)
        self.assertEqual(watcher.outcome, WatchState.DISPATCHED)
        self.assertEqual(watcher.state, WatchState.CLOSED)
        self.assertEqual(
            self.queue.tasks,
            [
                BuyTask(
                    token_address="0x1111111111111111111111111111111111111111",
                    amount_native="0.05",
                    slippage_fraction=0.25,
                    deadline_seconds=45,
                )
            ],
        )
        self.assertEqual(registry.active_count, 0)
        self.assertEqual(registry.outcomes, {"dispatched": 1})

    async def test_failed_checks_abort_without_enqueue(self) -> None:
        pipeline = _StubPipeline(FAIL)
        registry = self._registry(pipeline)
        watcher = registry.on_pair_created(_candidate())
        assert watcher is not None
        self.chain.dispatch(_event(TRANSFER_TOPIC))
        await asyncio.wait_for(watcher.wait_closed(), timeout=2.0)
        self.assertEqual(watcher.outcome, WatchState.ABORTED)
        self.assertIn("token missing symbol/decimals", watcher.close_reason)
        self.assertEqual(self.queue.tasks, [])

    async def test_rejected_dispatch_is_recorded_as_aborted(self) -> None:
        self.queue.accept = False
        registry = self._registry(_StubPipeline(PASS))
        watcher = registry.on_pair_created(_candidate())
        assert watcher is not None
        self.chain.dispatch(_event(MINT_TOPIC))
        await asyncio.wait_for(watcher.wait_closed(), timeout=2.0)
        self.assertEqual(watcher.outcome, WatchState.ABORTED)
        self.assertEqual(watcher.close_reason, "dispatch queue full")
        self.assertEqual(registry.outcomes, {"aborted": 1})

    async def test_timeout_without_trigger_closes_with_zero_pipeline_runs(self) -> None:
        pipeline = _StubPipeline(PASS)
        registry = self._registry(pipeline, timeout=0.05)
        watcher = registry.on_pair_created(_candidate())
        assert watcher is not None
        await asyncio.wait_for(watcher.wait_closed(), timeout=2.0)
        self.assertEqual(watcher.state, WatchState.CLOSED)
        self.assertEqual(watcher.outcome, WatchState.WATCHING)
        self.assertEqual(watcher.close_reason, "timeout")
        self.assertEqual(pipeline.runs, [])
        self.assertEqual(self.chain.subscription_count(), 0)
        # Late delivery after close is a silent no-op.
        watcher._on_liquidity(_event(MINT_TOPIC))
        await asyncio.sleep(0)
        self.assertEqual(pipeline.runs, [])

    async def test_timeout_during_checks_discards_result(self) -> None:
        gate = asyncio.Event()
        pipeline = _StubPipeline(PASS, gate=gate)
        registry = self._registry(pipeline, timeout=0.05)
        watcher = registry.on_pair_created(_candidate())
        assert watcher is not None
        self.chain.dispatch(_event(MINT_TOPIC))
        await asyncio.wait_for(watcher.wait_closed(), timeout=2.0)
        self.assertEqual(watcher.outcome, WatchState.CHECKING)

        gate.set()
        assert watcher._evaluation is not None
        await asyncio.wait_for(watcher._evaluation, timeout=2.0)
        self.assertEqual(len(pipeline.runs), 1)
        self.assertEqual(self.queue.tasks, [])
        self.assertEqual(watcher.state, WatchState.CLOSED)

    async def test_duplicate_pair_creation_is_ignored(self) -> None:
        registry = self._registry(_StubPipeline(PASS))
        first = registry.on_pair_created(_candidate())
        second = registry.on_pair_created(_candidate())
        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(registry.duplicates, 1)
        self.assertEqual(self.chain.subscription_count(), 2)
        registry.close()

    async def test_watchers_for_different_pairs_are_independent(self) -> None:
        pipeline = _StubPipeline(PASS)
        registry = self._registry(pipeline)
        pair_b = "0x4444444444444444444444444444444444444444"
        watcher_a = registry.on_pair_created(_candidate())
        watcher_b = registry.on_pair_created(_candidate(pair=pair_b))
        assert watcher_a is not None and watcher_b is not None
        self.chain.dispatch(_event(MINT_TOPIC, pair=pair_b))
        await asyncio.wait_for(watcher_b.wait_closed(), timeout=2.0)
        self.assertEqual(watcher_a.state, WatchState.WATCHING)
        self.assertEqual(self.chain.subscription_count(), 2)
        # Swap logs are not liquidity triggers.
        self.assertEqual(self.chain.dispatch(_event(SWAP_TOPIC)), 0)
        registry.close()


if __name__ == "__main__":
    unittest.main()
