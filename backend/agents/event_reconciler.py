"""
Event Reconciler
Keeps the Position Index in step with the vault's event log.

Startup protocol (EventReconciler):
1. Open the live subscription and start buffering everything it delivers
2. Backfill historical lifecycle logs from the start block, in chain order
3. Drain the buffer, then live events, through one sequential listener

Subscribing before the backfill means nothing emitted between the backfill
snapshot and the subscription going live can be missed; live logs already
covered by the backfill are skipped by their (block, logIndex) position.

VaultScanReconciler is the simpler strategy: on every oracle update it
replaces the index with the vault's own openPositionsIndexes() list.

Both run until cancelled or until a fatal error propagates out of run().
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from agents.errors import DecodeError, ReorgDetectedError
from agents.position_index import PositionIndex
from config.contracts import BORROW_TYPE_USE_INSURANCE
from integrations.event_decoder import CLOSING_KINDS, EventKind, EventRegistry, VaultEvent

logger = logging.getLogger(__name__)

PriceUpdateHandler = Callable[[VaultEvent], Awaitable[None]]


class _SubscriptionReconciler:
    """Shared subscription buffering for both strategies"""

    def __init__(
        self,
        chain,
        registry: EventRegistry,
        index: PositionIndex,
        on_price_update: PriceUpdateHandler,
        errors: asyncio.Queue,
    ):
        self.chain = chain
        self.registry = registry
        self.index = index
        self.on_price_update = on_price_update
        self.errors = errors

        self._buffer: asyncio.Queue = asyncio.Queue()
        self.backfill_done = asyncio.Event()
        self.applied = 0
        self.last_price_block: Optional[int] = None

    async def _subscribe(self, addresses: List[str], topics: List[str]) -> Tuple[object, asyncio.Task]:
        subscription = await self.chain.subscribe_logs(addresses, topics)
        reader = asyncio.create_task(self._read(subscription))
        return subscription, reader

    async def _read(self, subscription):
        """Buffer every live log; a dropped subscription goes straight to the error channel"""
        try:
            async for log in subscription:
                self._buffer.put_nowait(log)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.__class__.__name__}] Subscription failed: {e}")
            await self.errors.put(e)

    async def _close(self, subscription, reader: asyncio.Task):
        reader.cancel()
        await asyncio.gather(reader, return_exceptions=True)
        try:
            await subscription.close()
        except Exception as e:
            logger.debug(f"[{self.__class__.__name__}] Error closing subscription: {e}")

    async def _listen(self):
        """Handle buffered and live logs one at a time, in delivery order"""
        while True:
            log = await self._buffer.get()
            try:
                await self._handle_live(self._decode_live(log))
            finally:
                self._buffer.task_done()

    async def _handle_live(self, event: VaultEvent):
        raise NotImplementedError

    def _decode_live(self, log) -> VaultEvent:
        event = self.registry.decode(log)
        if event.removed:
            raise ReorgDetectedError(event.block_number, event.tx_hash or "unknown")
        return event

    async def _price_updated(self, event: VaultEvent):
        self.last_price_block = event.block_number
        logger.info(f"[{self.__class__.__name__}] Oracle price updated at block {event.block_number}, checking {len(self.index)} positions")
        await self.on_price_update(event)

    async def wait_idle(self):
        """Return once the backfill is applied and every buffered log has been handled"""
        await self.backfill_done.wait()
        await self._buffer.join()


class EventReconciler(_SubscriptionReconciler):
    """Incremental index maintenance from vault lifecycle events"""

    def __init__(
        self,
        chain,
        registry: EventRegistry,
        index: PositionIndex,
        vault_address: str,
        oracle_addresses: List[str],
        from_block: int,
        on_price_update: PriceUpdateHandler,
        errors: asyncio.Queue,
    ):
        super().__init__(chain, registry, index, on_price_update, errors)
        self.vault_address = vault_address
        self.oracle_addresses = list(oracle_addresses)
        self.from_block = from_block
        self._last_order: Optional[Tuple[int, int]] = None

    async def run(self):
        logger.info(f"[EventReconciler] Subscribing to vault {self.vault_address} and {len(self.oracle_addresses)} oracles")
        subscription, reader = await self._subscribe(
            [self.vault_address] + self.oracle_addresses,
            self.registry.lifecycle_topics + self.registry.price_topics,
        )

        try:
            await self._backfill()
            self.backfill_done.set()
            await self._listen()
        finally:
            await self._close(subscription, reader)

    async def _backfill(self):
        logger.info(f"[EventReconciler] Backfilling vault events from block {self.from_block}")
        logs = await self.chain.fetch_logs(self.from_block, [self.vault_address], self.registry.lifecycle_topics)

        events = sorted((self.registry.decode(log) for log in logs), key=lambda e: e.order)
        for event in events:
            await self.apply(event)

        logger.info(
            f"[EventReconciler] Backfill applied {len(events)} events, "
            f"{len(self.index)} open positions, {self._buffer.qsize()} live events buffered"
        )

    async def _handle_live(self, event: VaultEvent):
        if self._last_order is not None and event.order <= self._last_order:
            logger.debug(f"[EventReconciler] Skipping {event.kind.value} at {event.order}, already applied")
            return

        await self.apply(event)

    async def apply(self, event: VaultEvent):
        """Apply one event to the index. Idempotent for opens and closes."""
        kind = event.kind

        if kind == EventKind.POSITION_OPENED:
            if self.index.add(event.position_index):
                logger.debug(f"[EventReconciler] Position {event.position_index} opened")

        elif kind in CLOSING_KINDS:
            if self.index.discard(event.position_index):
                logger.debug(f"[EventReconciler] Position {event.position_index} removed ({kind.value})")

        elif kind == EventKind.LIQUIDATED:
            await self._liquidated(event.position_index)

        elif kind == EventKind.PRICE_UPDATED:
            await self._price_updated(event)

        else:
            raise DecodeError(f"Unhandled event kind {kind}")

        self._last_order = event.order
        self.applied += 1

    async def _liquidated(self, position_index: int):
        # Insured positions stay open until repurchased or the insurance expires
        preview = await self.chain.show_position(position_index)
        if preview.borrow_type == BORROW_TYPE_USE_INSURANCE:
            logger.info(f"[EventReconciler] Position {position_index} liquidated with insurance, still tracked")
            return

        if self.index.discard(position_index):
            logger.debug(f"[EventReconciler] Position {position_index} liquidated and closed")


class VaultScanReconciler(_SubscriptionReconciler):
    """Full vault scan on every oracle update"""

    def __init__(
        self,
        chain,
        registry: EventRegistry,
        index: PositionIndex,
        oracle_addresses: List[str],
        on_price_update: PriceUpdateHandler,
        errors: asyncio.Queue,
    ):
        super().__init__(chain, registry, index, on_price_update, errors)
        self.oracle_addresses = list(oracle_addresses)

    async def run(self):
        logger.info(f"[VaultScanReconciler] Subscribing to {len(self.oracle_addresses)} oracles")
        subscription, reader = await self._subscribe(self.oracle_addresses, self.registry.price_topics)
        self.backfill_done.set()

        try:
            await self._listen()
        finally:
            await self._close(subscription, reader)

    async def _handle_live(self, event: VaultEvent):
        if event.kind != EventKind.PRICE_UPDATED:
            raise DecodeError(f"Unexpected {event.kind.value} log on the oracle subscription")

        self.index.replace(await self.chain.open_position_indexes())
        self.applied += 1
        await self._price_updated(event)
