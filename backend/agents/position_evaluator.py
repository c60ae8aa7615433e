"""
Position Evaluator
Classifies tracked positions as liquidatable, claimable (insurance expired)
or stale, using fresh on-chain state for each one.

Called only from the reconciler's listener task, so it may prune the index
without locking.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List

from agents.errors import EvaluationError
from agents.position_index import PositionIndex
from config.contracts import BORROW_TYPE_NOT_CONFIRMED, INSURANCE_GRACE_SECONDS

logger = logging.getLogger(__name__)


@dataclass
class EvaluationResult:
    liquidatable: List[int] = field(default_factory=list)
    claimable: List[int] = field(default_factory=list)
    removed: List[int] = field(default_factory=list)

    @property
    def actionable(self) -> bool:
        return bool(self.liquidatable or self.claimable)


def is_insurance_expired(liquidated_at: int, now: int) -> bool:
    """Strictly more than the grace period since liquidation"""
    return liquidated_at > 0 and now - liquidated_at > INSURANCE_GRACE_SECONDS


class PositionEvaluator:
    """Fail-fast classification pass over a set of position indexes"""

    def __init__(self, chain, index: PositionIndex, clock: Callable[[], float] = time.time):
        self.chain = chain
        self.index = index
        self.clock = clock

    async def evaluate(self, indexes: Iterable[int]) -> EvaluationResult:
        """
        Fetch and classify every index.

        Raises:
            EvaluationError: any single fetch failed; no partial result is returned
        """
        result = EvaluationResult()
        now = int(self.clock())
        indexes = sorted(indexes)

        for index in indexes:
            try:
                preview = await self.chain.show_position(index)
            except Exception as e:
                raise EvaluationError(index, str(e)) from e

            if preview.borrow_type == BORROW_TYPE_NOT_CONFIRMED:
                # Closed on-chain but we missed the event
                if self.index.discard(index):
                    logger.info(f"[PositionEvaluator] Position {index} already closed, dropped from index")
                result.removed.append(index)
                continue

            if preview.liquidatable:
                logger.info(f"[PositionEvaluator] Found liquidatable position, index is {index}")
                result.liquidatable.append(index)
            elif is_insurance_expired(preview.liquidated_at, now):
                logger.info(f"[PositionEvaluator] Found position with expired insurance, index is {index}")
                result.claimable.append(index)

        logger.info(
            f"[PositionEvaluator] Checked {len(indexes)} positions: {len(result.liquidatable)} liquidatable, "
            f"{len(result.claimable)} claimable, {len(result.removed)} stale"
        )
        return result
