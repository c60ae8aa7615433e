"""
Status API Router - Read-only view of a running liquidator

Endpoints:
- GET /api/status - Tracked positions, reconciliation and submission counters
- GET /api/status/health - Liveness probe
"""

from typing import List, Optional

from fastapi import APIRouter, FastAPI, Request
from pydantic import BaseModel

router = APIRouter(prefix="/api/status", tags=["status"])


class LiquidatorStatus(BaseModel):
    mode: str
    chain_id: Optional[int] = None
    fee_model: Optional[str] = None
    max_gas_price_gwei: float
    tracked_positions: int
    backfill_complete: bool
    events_applied: int
    last_price_update_block: Optional[int] = None
    submissions_sent: int
    submissions_failed: int
    submissions_in_flight: int
    recent_tx_hashes: List[str] = []
    started_at: Optional[str] = None


@router.get("", response_model=LiquidatorStatus)
async def get_status(request: Request):
    """
    Snapshot of the liquidator's state

    Returns:
    - Tracked position count and whether the backfill has finished
    - Sent / failed / in-flight transaction counts
    - Most recent transaction hashes
    """
    return request.app.state.liquidator.status()


@router.get("/health")
async def health():
    return {"status": "ok"}


def create_app(liquidator) -> FastAPI:
    """Standalone app served next to the bot"""
    app = FastAPI(title="Vault Liquidator", docs_url=None, redoc_url=None)
    app.state.liquidator = liquidator
    app.include_router(router)
    return app
