"""
Liquidator Orchestrator
Owns the position index, wires the reconciler, evaluator and submitter
together, and centralizes termination.

Failure policy:
- Every fatal error (subscription drop, decode, evaluation, submission setup,
  reorg) lands on one error channel; the first one stops the bot
- There is no restart or backoff: start() raises and the process must be
  restarted externally, which performs a fresh backfill
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from agents.errors import LiquidatorError, SubmissionError
from agents.event_reconciler import EventReconciler, VaultScanReconciler
from agents.position_evaluator import PositionEvaluator
from agents.position_index import PositionIndex
from config.contracts import CHUNK_SIZE, DEFAULT_START_BLOCK, ORACLE_ABI, VAULT_ABI
from integrations.batch_submitter import BatchSubmitter, GasPolicy, SubmissionResult
from integrations.event_decoder import EventRegistry, VaultEvent

logger = logging.getLogger(__name__)


class Liquidator:
    """
    The liquidator bot.

    Checks positions every time one of the oracles is updated, and keeps the
    tracked position set current from vault events in between.
    """

    def __init__(
        self,
        chain,
        signer,
        vault_address: str,
        liquidator_address: str,
        oracles: List[str],
        max_gas_price: int,
        start_block: int = DEFAULT_START_BLOCK,
        mode: str = "events",
        chunk_size: int = CHUNK_SIZE,
        registry: Optional[EventRegistry] = None,
        status_port: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        if mode not in ("events", "scan"):
            raise ValueError(f"Unknown reconciliation mode: {mode}")

        self.chain = chain
        self.signer = signer
        self.vault_address = vault_address
        self.liquidator_address = liquidator_address
        self.oracles = list(oracles)
        self.max_gas_price = max_gas_price
        self.start_block = start_block
        self.mode = mode
        self.chunk_size = chunk_size
        self.registry = registry or EventRegistry.from_abis(VAULT_ABI, ORACLE_ABI)
        self.status_port = status_port
        self.clock = clock

        self.index = PositionIndex()
        self.errors: Optional[asyncio.Queue] = None
        self.chain_id: Optional[int] = None
        self.gas_policy: Optional[GasPolicy] = None
        self.evaluator: Optional[PositionEvaluator] = None
        self.submitter: Optional[BatchSubmitter] = None
        self.reconciler = None
        self.started_at: Optional[datetime] = None
        self.recent_results = deque(maxlen=50)

    async def setup(self):
        """Detect chain id and fee model, build the pipeline"""
        self.errors = asyncio.Queue()
        self.chain_id = await self.chain.chain_id()
        self.gas_policy = await GasPolicy.detect(self.chain, self.max_gas_price)

        self.evaluator = PositionEvaluator(self.chain, self.index, self.clock)
        self.submitter = BatchSubmitter(
            self.chain,
            self.signer,
            self.gas_policy,
            self.chain_id,
            self.liquidator_address,
            chunk_size=self.chunk_size,
            on_result=self._on_submission,
        )
        self.reconciler = self._build_reconciler()

    def _build_reconciler(self):
        if self.mode == "scan":
            return VaultScanReconciler(
                self.chain,
                self.registry,
                self.index,
                self.oracles,
                self.check_positions,
                self.errors,
            )
        return EventReconciler(
            self.chain,
            self.registry,
            self.index,
            self.vault_address,
            self.oracles,
            self.start_block,
            self.check_positions,
            self.errors,
        )

    async def start(self):
        """
        Run until the first fatal error, then raise it.

        In-flight sends are awaited before returning so their outcome is logged.
        """
        logger.info("[Liquidator] Starting liquidator bot...")
        await self.setup()
        self.started_at = datetime.now(timezone.utc)

        tasks = [asyncio.create_task(self._guard(self.reconciler.run(), "reconciler"))]
        if self.status_port:
            tasks.append(asyncio.create_task(self._guard(self._serve_status(), "status server")))

        logger.info(f"[Liquidator] Liquidator bot started (chain {self.chain_id}, mode {self.mode}, {self.gas_policy.model} fees)")

        try:
            error = await self.errors.get()
            logger.error(f"[Liquidator] Fatal error, stopping: {error}")
            raise error
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.submitter.drain()

    async def _guard(self, coro, name: str):
        """Forward a task's failure (or unexpected exit) to the error channel"""
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except SystemExit as e:
            await self.errors.put(LiquidatorError(f"{name} exited with code {e.code}"))
        except Exception as e:
            await self.errors.put(e)
        else:
            await self.errors.put(LiquidatorError(f"{name} stopped unexpectedly"))

    async def check_positions(self, event: Optional[VaultEvent] = None):
        """Evaluate every tracked position and submit liquidations / claims"""
        result = await self.evaluator.evaluate(self.index.snapshot())
        if not result.actionable:
            return

        failures: List[SubmissionError] = []
        if result.liquidatable:
            logger.info(f"[Liquidator] Attempting to liquidate {len(result.liquidatable)} positions")
            try:
                await self.submitter.liquidate(result.liquidatable)
            except SubmissionError as e:
                failures.append(e)

        if result.claimable:
            logger.info(f"[Liquidator] Attempting to claim {len(result.claimable)} NFTs from positions with expired insurance")
            try:
                await self.submitter.claim(result.claimable)
            except SubmissionError as e:
                failures.append(e)

        if failures:
            raise failures[0]

    def _on_submission(self, result: SubmissionResult):
        self.recent_results.append(result)

    async def _serve_status(self):
        import uvicorn
        from api.status_router import create_app

        config = uvicorn.Config(create_app(self), host="0.0.0.0", port=self.status_port, log_level="warning")
        server = uvicorn.Server(config)
        logger.info(f"[Liquidator] Status API on port {self.status_port}")
        try:
            await server.serve()
        except SystemExit as e:
            # uvicorn exits the process when it cannot bind
            raise LiquidatorError(f"Status API could not start on port {self.status_port}") from e

    def status(self) -> Dict:
        """Read-only snapshot for the status API"""
        reconciler = self.reconciler
        submitter = self.submitter
        return {
            "mode": self.mode,
            "chain_id": self.chain_id,
            "fee_model": self.gas_policy.model if self.gas_policy else None,
            "max_gas_price_gwei": self.max_gas_price / 1e9,
            "tracked_positions": len(self.index),
            "backfill_complete": bool(reconciler and reconciler.backfill_done.is_set()),
            "events_applied": reconciler.applied if reconciler else 0,
            "last_price_update_block": reconciler.last_price_block if reconciler else None,
            "submissions_sent": submitter.sent if submitter else 0,
            "submissions_failed": submitter.failed if submitter else 0,
            "submissions_in_flight": submitter.in_flight if submitter else 0,
            "recent_tx_hashes": [r.tx_hash for r in self.recent_results if r.tx_hash][-10:],
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }
