"""
Shared fixtures: raw log builders, a scripted log subscription and chain fakes.
"""

import asyncio
from types import SimpleNamespace
from typing import Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode
from eth_utils import encode_hex, event_abi_to_log_topic

from config.contracts import BORROW_TYPE_NON_INSURANCE, ORACLE_ABI, VAULT_ABI
from integrations.chain_client import PositionPreview
from integrations.event_decoder import EventRegistry

VAULT = "0x271c7603aaf2bd8f68e8ca60f4a4f22c4920259f"
ORACLE = "0x352f2bc3039429fc2fe62004a1575ae74001cfce"
LIQUIDATOR = "0x2cc2c9d3d7cc4bd0c5ec8e2de8dd8a6f2bbe2c36"
WALLET = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"
OWNER = "0x" + "11" * 20

EVENT_ABIS = {abi["name"]: abi for abi in VAULT_ABI + ORACLE_ABI if abi.get("type") == "event"}


class FakeSubscription:
    """Scripted eth_subscribe stream; push() a log dict or an exception"""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, item):
        self.queue.put_nowait(item)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


def _topic_value(inp: Dict, value) -> str:
    return encode_hex(encode([inp["type"]], [value]))


def build_log(
    name: str,
    block: int,
    log_index: int = 0,
    index: Optional[int] = None,
    removed: bool = False,
    address: str = VAULT,
    tx_hash: Optional[str] = None,
) -> Dict:
    """Raw log in the websocket JSON shape (hex strings everywhere)"""
    abi = EVENT_ABIS[name]
    topics = [encode_hex(event_abi_to_log_topic(abi))]

    for inp in abi["inputs"]:
        if not inp.get("indexed"):
            continue
        if inp["name"] == "index":
            topics.append(_topic_value(inp, index))
        elif inp["type"] == "address":
            topics.append(_topic_value(inp, OWNER))
        else:
            topics.append(_topic_value(inp, 1))

    return {
        "address": address,
        "topics": topics,
        "data": "0x",
        "blockNumber": hex(block),
        "logIndex": hex(log_index),
        "transactionHash": tx_hash or "0x" + f"{block:04x}{log_index:04x}".rjust(64, "a"),
        "removed": removed,
    }


def build_preview(
    index: int,
    borrow_type: int = BORROW_TYPE_NON_INSURANCE,
    liquidatable: bool = False,
    liquidated_at: int = 0,
) -> PositionPreview:
    return PositionPreview(
        index=index,
        owner=OWNER,
        borrow_type=borrow_type,
        liquidatable=liquidatable,
        liquidated_at=liquidated_at,
    )


@pytest.fixture
def addresses():
    return SimpleNamespace(vault=VAULT, oracle=ORACLE, liquidator=LIQUIDATOR, wallet=WALLET)


@pytest.fixture
def registry():
    return EventRegistry.from_abis(VAULT_ABI, ORACLE_ABI)


@pytest.fixture
def make_log():
    return build_log


@pytest.fixture
def make_preview():
    return build_preview


@pytest.fixture
def subscription():
    return FakeSubscription()


@pytest.fixture
def chain(subscription):
    """Chain client fake; show_position reads from chain.previews"""
    mock = MagicMock()
    mock.previews = {}
    mock.subscribe_logs = AsyncMock(return_value=subscription)
    mock.fetch_logs = AsyncMock(return_value=[])
    mock.show_position = AsyncMock(side_effect=lambda index: mock.previews[index])
    mock.open_position_indexes = AsyncMock(return_value=[])
    mock.chain_id = AsyncMock(return_value=1)
    mock.pending_nonce = AsyncMock(return_value=7)
    mock.estimate_gas = AsyncMock(return_value=100_000)
    mock.suggest_priority_fee = AsyncMock(return_value=2_000_000_000)
    mock.suggest_gas_price = AsyncMock(return_value=30_000_000_000)
    mock.send_raw_transaction = AsyncMock(side_effect=lambda raw: "0x" + raw.hex().rjust(64, "0")[:64])
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def signer():
    """Signer fake; the raw transaction encodes the nonce so sends are traceable"""
    mock = MagicMock()
    mock.address = WALLET
    mock.sign = MagicMock(side_effect=lambda tx, chain_id: SimpleNamespace(raw_transaction=bytes([tx["nonce"]])))
    return mock


async def settle(reconciler, subscription: FakeSubscription, timeout: float = 2):
    """Wait until every pushed log has been handled by the reconciler"""
    async def _drain():
        while not subscription.queue.empty():
            await asyncio.sleep(0)
        await reconciler.wait_idle()

    await asyncio.wait_for(_drain(), timeout=timeout)


@pytest.fixture
def wait_settled():
    return settle
