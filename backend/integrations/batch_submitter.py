"""
Batch Submitter
Turns actionable position indexes into liquidator-contract transactions.

Flow per chunk of <= CHUNK_SIZE indexes:
1. Encode liquidate / claimExpiredInsuranceNFT call data
2. Pending nonce, gas estimate (+20% headroom), fee within the max gas price
3. Sign and dispatch the send as a task (no receipt wait)

Send outcomes come back as SubmissionResult objects through on_result, so a
failed send is logged and counted instead of disappearing.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from eth_abi import encode
from eth_utils import function_abi_to_4byte_selector

from agents.errors import SubmissionError
from config.contracts import (
    CHUNK_SIZE,
    CLAIM_METHOD,
    GAS_HEADROOM_DENOMINATOR,
    GAS_HEADROOM_NUMERATOR,
    LIQUIDATE_METHOD,
    LIQUIDATOR_ABI,
)

logger = logging.getLogger(__name__)

LIQUIDATOR_FUNCTIONS = {abi["name"]: abi for abi in LIQUIDATOR_ABI if abi["type"] == "function"}


class SubmissionKind(Enum):
    LIQUIDATE = LIQUIDATE_METHOD
    CLAIM = CLAIM_METHOD


@dataclass
class SubmissionResult:
    """Outcome of one chunk"""
    kind: SubmissionKind
    chunk: List[int]
    nonce: Optional[int] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    stage: str = "send"

    @property
    def success(self) -> bool:
        return self.error is None


def chunked(indexes: List[int], size: int = CHUNK_SIZE) -> List[List[int]]:
    """Contiguous chunks of at most size items, order preserved"""
    if size <= 0:
        raise ValueError(f"Chunk size must be positive, got {size}")
    return [list(indexes[i:i + size]) for i in range(0, len(indexes), size)]


def gas_limit(estimated: int) -> int:
    """Estimated gas with 20% headroom, rounded down"""
    return estimated * GAS_HEADROOM_NUMERATOR // GAS_HEADROOM_DENOMINATOR


def encode_call(method: str, indexes: List[int]) -> bytes:
    """Call data for a liquidator entry point, typed from LIQUIDATOR_ABI"""
    abi = LIQUIDATOR_FUNCTIONS.get(method)
    if abi is None:
        raise ValueError(f"Liquidator contract has no method {method}")
    types = [arg["type"] for arg in abi["inputs"]]
    return function_abi_to_4byte_selector(abi) + encode(types, [indexes])


class GasPolicy:
    """
    Fee model detected once at startup, clamped by the configured maximum.

    Priority-fee networks: tip = min(suggested tip, max), fee cap = max.
    Legacy networks: gas price = min(suggested gas price, max).
    """

    def __init__(self, max_gas_price: int, supports_priority_fee: bool):
        self.max_gas_price = max_gas_price
        self.supports_priority_fee = supports_priority_fee

    @classmethod
    async def detect(cls, chain, max_gas_price: int) -> "GasPolicy":
        try:
            await chain.suggest_priority_fee()
            supported = True
        except Exception as e:
            logger.info(f"[GasPolicy] Priority fee probe failed ({e}), using legacy gas price")
            supported = False

        logger.info(f"[GasPolicy] Fee model: {'priority-fee' if supported else 'legacy'}, max {max_gas_price / 1e9:.2f} gwei")
        return cls(max_gas_price, supported)

    @property
    def model(self) -> str:
        return "priority-fee" if self.supports_priority_fee else "legacy"

    async def fees(self, chain) -> Dict[str, int]:
        """Fee fields for the next transaction"""
        if self.supports_priority_fee:
            tip = await chain.suggest_priority_fee()
            if tip > self.max_gas_price:
                logger.warning(f"[GasPolicy] Tip {tip / 1e9:.2f} gwei above max, clamping")
                tip = self.max_gas_price
            return {"maxFeePerGas": self.max_gas_price, "maxPriorityFeePerGas": tip}

        gas_price = await chain.suggest_gas_price()
        if gas_price > self.max_gas_price:
            logger.warning(f"[GasPolicy] Gas price {gas_price / 1e9:.2f} gwei above max, clamping")
            gas_price = self.max_gas_price
        return {"gasPrice": gas_price}


class BatchSubmitter:
    """
    Chunks, prices, signs and dispatches liquidator transactions.

    Setup (nonce, estimate, fees, signing) runs inline in the caller; only the
    final send is detached. A chunk that fails setup is skipped, its siblings
    are still attempted, and SubmissionError is raised at the end.
    """

    def __init__(
        self,
        chain,
        signer,
        gas_policy: GasPolicy,
        chain_id: int,
        liquidator_address: str,
        chunk_size: int = CHUNK_SIZE,
        on_result: Optional[Callable[[SubmissionResult], None]] = None,
    ):
        self.chain = chain
        self.signer = signer
        self.gas_policy = gas_policy
        self.chain_id = chain_id
        self.liquidator_address = liquidator_address
        self.chunk_size = chunk_size
        self.on_result = on_result

        self._pending: Set[asyncio.Task] = set()
        self._last_nonce: Optional[int] = None
        self.sent = 0
        self.failed = 0

    async def liquidate(self, indexes: List[int]) -> int:
        return await self.submit(SubmissionKind.LIQUIDATE, indexes)

    async def claim(self, indexes: List[int]) -> int:
        return await self.submit(SubmissionKind.CLAIM, indexes)

    async def submit(self, kind: SubmissionKind, indexes: List[int]) -> int:
        """
        Dispatch one transaction per chunk.

        Returns:
            Number of chunks dispatched

        Raises:
            SubmissionError: one or more chunks failed before dispatch
        """
        if not indexes:
            return 0

        chunks = chunked(indexes, self.chunk_size)
        calls = [encode_call(kind.value, chunk) for chunk in chunks]

        logger.info(f"[BatchSubmitter] {kind.value}: {len(indexes)} positions in {len(chunks)} transaction(s)")

        failed: List[List[int]] = []
        dispatched = 0

        for chunk, data in zip(chunks, calls):
            try:
                tx = await self._build_transaction(data)
                signed = self.signer.sign(tx, self.chain_id)
            except Exception as e:
                logger.error(f"[BatchSubmitter] ✗ {kind.value} {chunk} not dispatched: {e}")
                failed.append(chunk)
                self._report(SubmissionResult(kind, chunk, error=str(e), stage="setup"))
                continue

            self._last_nonce = tx["nonce"]
            self._dispatch(kind, chunk, tx["nonce"], signed.raw_transaction)
            dispatched += 1

        if failed:
            raise SubmissionError(kind.value, failed)
        return dispatched

    async def _build_transaction(self, data: bytes) -> Dict:
        nonce = await self.chain.pending_nonce(self.signer.address)
        if self._last_nonce is not None and nonce <= self._last_nonce:
            # Earlier sends (this batch or a previous one) may not have reached the node yet
            nonce = self._last_nonce + 1

        estimated = await self.chain.estimate_gas({
            "from": self.signer.address,
            "to": self.liquidator_address,
            "data": data,
        })
        fees = await self.gas_policy.fees(self.chain)

        tx = {
            "to": self.liquidator_address,
            "data": data,
            "value": 0,
            "nonce": nonce,
            "gas": gas_limit(estimated),
        }
        tx.update(fees)
        return tx

    def _dispatch(self, kind: SubmissionKind, chunk: List[int], nonce: int, raw_transaction: bytes):
        task = asyncio.create_task(self._send(kind, chunk, nonce, raw_transaction))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, kind: SubmissionKind, chunk: List[int], nonce: int, raw_transaction: bytes) -> SubmissionResult:
        try:
            tx_hash = await self.chain.send_raw_transaction(raw_transaction)
            result = SubmissionResult(kind, chunk, nonce=nonce, tx_hash=tx_hash)
            logger.info(f"[BatchSubmitter] {kind.value} tx sent: {tx_hash} (nonce {nonce}, {len(chunk)} positions)")
        except Exception as e:
            result = SubmissionResult(kind, chunk, nonce=nonce, error=str(e))
            logger.error(f"[BatchSubmitter] ✗ {kind.value} send failed (nonce {nonce}): {e}")

        self._report(result)
        return result

    def _report(self, result: SubmissionResult):
        if result.success:
            self.sent += 1
        else:
            self.failed += 1
        if self.on_result is not None:
            self.on_result(result)

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait for every dispatched send to finish"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
