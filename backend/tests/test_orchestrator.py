"""
Orchestrator Tests
===================

- setup() detects the fee model and picks the reconciliation strategy
- check_positions() liquidates and claims, surfacing setup failures
- The first fatal error from any task stops the bot and is raised by start()
- A price update flows through to a dispatched transaction

Run: python -m pytest tests/test_orchestrator.py -v --tb=short
"""

import asyncio
import socket

import pytest

from agents.errors import (
    LiquidatorError,
    ReorgDetectedError,
    SubmissionError,
    TransportError,
)
from agents.event_reconciler import EventReconciler, VaultScanReconciler
from agents.orchestrator import Liquidator
from config.contracts import BORROW_TYPE_USE_INSURANCE

NOW = 1_700_000_000
MAX_GAS_PRICE = 100 * 10 ** 9


@pytest.fixture
def make_liquidator(chain, signer, addresses):
    def _make(**kwargs):
        kwargs.setdefault("clock", lambda: NOW)
        return Liquidator(
            chain,
            signer,
            addresses.vault,
            addresses.liquidator,
            [addresses.oracle],
            MAX_GAS_PRICE,
            **kwargs,
        )
    return _make


async def wait_for_sends(chain, count: int, timeout: float = 2):
    async def _poll():
        while chain.send_raw_transaction.await_count < count:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout=timeout)


class TestSetup:

    @pytest.mark.asyncio
    async def test_event_mode(self, make_liquidator):
        liquidator = make_liquidator()
        await liquidator.setup()

        assert liquidator.chain_id == 1
        assert liquidator.gas_policy.model == "priority-fee"
        assert isinstance(liquidator.reconciler, EventReconciler)

    @pytest.mark.asyncio
    async def test_scan_mode(self, make_liquidator):
        liquidator = make_liquidator(mode="scan")
        await liquidator.setup()
        assert isinstance(liquidator.reconciler, VaultScanReconciler)

    @pytest.mark.asyncio
    async def test_legacy_chain(self, make_liquidator, chain):
        chain.suggest_priority_fee.side_effect = TransportError("method not found")
        liquidator = make_liquidator()
        await liquidator.setup()
        assert liquidator.gas_policy.model == "legacy"

    def test_unknown_mode(self, make_liquidator):
        with pytest.raises(ValueError):
            make_liquidator(mode="poll")


class TestCheckPositions:

    @pytest.mark.asyncio
    async def test_liquidates_and_claims(self, make_liquidator, chain, signer, make_preview):
        chain.previews = {
            1: make_preview(1, liquidatable=True),
            2: make_preview(2, borrow_type=BORROW_TYPE_USE_INSURANCE, liquidated_at=NOW - 4 * 86400),
            3: make_preview(3),
        }
        liquidator = make_liquidator()
        await liquidator.setup()
        liquidator.index.replace([1, 2, 3])

        await liquidator.check_positions()
        await liquidator.submitter.drain()

        assert signer.sign.call_count == 2
        assert chain.send_raw_transaction.await_count == 2
        assert liquidator.submitter.sent == 2
        assert len(liquidator.recent_results) == 2

    @pytest.mark.asyncio
    async def test_liquidation_and_claim_get_distinct_nonces(self, make_liquidator, chain, signer, make_preview):
        # The node reports the same pending nonce until the sends land
        chain.previews = {
            1: make_preview(1, liquidatable=True),
            2: make_preview(2, borrow_type=BORROW_TYPE_USE_INSURANCE, liquidated_at=NOW - 4 * 86400),
        }
        liquidator = make_liquidator()
        await liquidator.setup()
        liquidator.index.replace([1, 2])

        await liquidator.check_positions()
        await liquidator.check_positions()
        await liquidator.submitter.drain()

        nonces = [c.args[0]["nonce"] for c in signer.sign.call_args_list]
        assert nonces == [7, 8, 9, 10]

    @pytest.mark.asyncio
    async def test_claim_attempted_after_liquidation_failure(self, make_liquidator, chain, make_preview):
        chain.previews = {
            1: make_preview(1, liquidatable=True),
            2: make_preview(2, borrow_type=BORROW_TYPE_USE_INSURANCE, liquidated_at=NOW - 4 * 86400),
        }
        chain.estimate_gas.side_effect = [TransportError("execution reverted"), 100_000]
        liquidator = make_liquidator()
        await liquidator.setup()
        liquidator.index.replace([1, 2])

        with pytest.raises(SubmissionError) as exc:
            await liquidator.check_positions()
        await liquidator.submitter.drain()

        assert exc.value.method == "liquidate"
        assert chain.send_raw_transaction.await_count == 1

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, make_liquidator, chain, signer, make_preview):
        chain.previews = {1: make_preview(1)}
        liquidator = make_liquidator()
        await liquidator.setup()
        liquidator.index.add(1)

        await liquidator.check_positions()
        signer.sign.assert_not_called()


class TestStart:

    @pytest.mark.asyncio
    async def test_reorg_stops_the_bot(self, make_liquidator, subscription, make_log):
        subscription.push(make_log("PositionClosed", block=20, index=5, removed=True))
        liquidator = make_liquidator()

        with pytest.raises(ReorgDetectedError):
            await asyncio.wait_for(liquidator.start(), timeout=2)
        assert subscription.closed is True

    @pytest.mark.asyncio
    async def test_subscription_drop_stops_the_bot(self, make_liquidator, subscription):
        subscription.push(TransportError("Subscription dropped"))
        liquidator = make_liquidator()

        with pytest.raises(TransportError):
            await asyncio.wait_for(liquidator.start(), timeout=2)

    @pytest.mark.asyncio
    async def test_backfill_failure_stops_the_bot(self, make_liquidator, chain):
        chain.fetch_logs.side_effect = TransportError("eth_getLogs failed")
        liquidator = make_liquidator()

        with pytest.raises(TransportError):
            await asyncio.wait_for(liquidator.start(), timeout=2)

    @pytest.mark.asyncio
    async def test_price_update_liquidates(self, make_liquidator, chain, subscription, make_log, make_preview, addresses):
        chain.fetch_logs.return_value = [make_log("PositionOpened", block=10, index=1)]
        chain.previews = {1: make_preview(1, liquidatable=True)}
        liquidator = make_liquidator()

        task = asyncio.create_task(liquidator.start())
        try:
            subscription.push(make_log("AnswerUpdated", block=30, address=addresses.oracle))
            await wait_for_sends(chain, 1)
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        status = liquidator.status()
        assert status["tracked_positions"] == 1
        assert status["last_price_update_block"] == 30
        assert status["submissions_sent"] == 1
        assert status["backfill_complete"] is True
        assert len(status["recent_tx_hashes"]) == 1

    @pytest.mark.asyncio
    async def test_unexpected_exit_is_fatal(self, make_liquidator):
        liquidator = make_liquidator()
        liquidator.errors = asyncio.Queue()

        async def finished():
            return None

        await liquidator._guard(finished(), "reconciler")
        error = liquidator.errors.get_nowait()
        assert isinstance(error, LiquidatorError)
        assert "reconciler" in str(error)

    @pytest.mark.asyncio
    async def test_system_exit_is_fatal(self, make_liquidator):
        liquidator = make_liquidator()
        liquidator.errors = asyncio.Queue()

        async def exits():
            raise SystemExit(3)

        await liquidator._guard(exits(), "status server")
        error = liquidator.errors.get_nowait()
        assert isinstance(error, LiquidatorError)
        assert "status server" in str(error)

    @pytest.mark.asyncio
    async def test_status_port_in_use_stops_the_bot(self, make_liquidator, chain):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
            taken.bind(("0.0.0.0", 0))
            taken.listen(1)
            port = taken.getsockname()[1]
            liquidator = make_liquidator(status_port=port)

            with pytest.raises(LiquidatorError, match=str(port)):
                await asyncio.wait_for(liquidator.start(), timeout=5)

        assert liquidator.submitter.in_flight == 0


class TestStatus:

    def test_status_before_start(self, make_liquidator):
        status = make_liquidator().status()
        assert status["mode"] == "events"
        assert status["tracked_positions"] == 0
        assert status["backfill_complete"] is False
        assert status["fee_model"] is None
        assert status["max_gas_price_gwei"] == 100
