"""
Chain Client
Typed read / subscribe / send primitives against the vault's chain.

- JSON-RPC reads and sends go through web3's AsyncWeb3 over HTTP
- Live logs come from an eth_subscribe("logs") websocket, the same raw
  subscription pattern used for contract event monitoring

Every transport failure surfaces as TransportError, every unexpected call
result as DecodeError. Nothing here retries.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import websockets
from eth_utils import encode_hex
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import BadFunctionCallOutput

from agents.errors import DecodeError, TransportError
from config.contracts import VAULT_ABI

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionPreview:
    """The subset of the vault's PositionPreview the liquidator acts on"""
    index: int
    owner: str
    borrow_type: int
    liquidatable: bool
    liquidated_at: int


def _preview_fields(vault_abi: List[Dict]) -> Dict[str, int]:
    """Position of each PositionPreview field in the showPosition output tuple"""
    for entry in vault_abi:
        if entry.get("type") == "function" and entry.get("name") == "showPosition":
            components = entry["outputs"][0].get("components", [])
            return {c["name"]: i for i, c in enumerate(components)}
    raise DecodeError("Vault ABI has no showPosition function")


class LogSubscription:
    """
    Live log stream from eth_subscribe.

    Iterating yields raw log dicts in delivery order. The iterator raises
    TransportError once the socket drops; it never reconnects.
    """

    def __init__(self, ws, subscription_id: str, ping_interval: float = 30):
        self.ws = ws
        self.subscription_id = subscription_id
        self.ping_interval = ping_interval

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict:
        while True:
            try:
                msg = await asyncio.wait_for(self.ws.recv(), timeout=self.ping_interval)
            except asyncio.TimeoutError:
                # Keep the connection alive while the chain is quiet
                try:
                    await self.ws.ping()
                except websockets.exceptions.ConnectionClosed as e:
                    raise TransportError(f"Subscription dropped: {e}") from e
                continue
            except websockets.exceptions.ConnectionClosed as e:
                raise TransportError(f"Subscription dropped: {e}") from e

            try:
                data = json.loads(msg)
            except ValueError as e:
                raise DecodeError(f"Invalid subscription message: {e}") from e

            params = data.get("params") or {}
            if data.get("method") == "eth_subscription" and params.get("subscription") == self.subscription_id:
                return params["result"]

            if "error" in data:
                raise TransportError(f"Subscription error: {data['error']}")

    async def close(self):
        await self.ws.close()


class ChainClient:
    """Async access to the node for the vault, oracle and liquidator contracts"""

    def __init__(
        self,
        rpc_url: str,
        ws_url: str,
        vault_address: str,
        vault_abi: Optional[List[Dict]] = None,
        request_timeout: int = 60,
        log_block_range: Optional[int] = None,
    ):
        self.rpc_url = rpc_url
        self.ws_url = ws_url
        self.log_block_range = log_block_range

        vault_abi = vault_abi or VAULT_ABI
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.vault = self.w3.eth.contract(
            address=Web3.to_checksum_address(vault_address),
            abi=vault_abi,
        )
        self._fields = _preview_fields(vault_abi)

    # ===========================================
    # SUBSCRIPTION
    # ===========================================

    async def subscribe_logs(self, addresses: List[str], topics: List[str]) -> LogSubscription:
        """Open an eth_subscribe("logs") stream for the given contracts and topic set"""
        logger.info(f"[ChainClient] Subscribing to {len(topics)} topics on {len(addresses)} contracts")

        try:
            ws = await websockets.connect(self.ws_url)
        except Exception as e:
            raise TransportError(f"Cannot connect to {self.ws_url[:50]}: {e}") from e

        subscribe_msg = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["logs", {"address": addresses, "topics": [topics]}],
        }

        try:
            await ws.send(json.dumps(subscribe_msg))
            response = json.loads(await ws.recv())
        except Exception as e:
            await ws.close()
            raise TransportError(f"Subscription request failed: {e}") from e

        if "result" not in response:
            await ws.close()
            raise TransportError(f"Subscription rejected: {response.get('error', response)}")

        logger.info(f"[ChainClient] Subscribed with ID: {response['result']}")
        return LogSubscription(ws, response["result"])

    # ===========================================
    # READS
    # ===========================================

    async def fetch_logs(self, from_block: int, addresses: List[str], topics: List[str]) -> List[Dict]:
        """Historical logs from from_block (inclusive) to latest, in chain order"""
        try:
            if self.log_block_range:
                logs = await self._fetch_logs_chunked(from_block, addresses, topics)
            else:
                logs = await self.w3.eth.get_logs({
                    "fromBlock": from_block,
                    "toBlock": "latest",
                    "address": addresses,
                    "topics": [topics],
                })
        except Exception as e:
            raise TransportError(f"eth_getLogs from block {from_block} failed: {e}") from e

        return sorted(logs, key=lambda log: (log["blockNumber"], log["logIndex"]))

    async def _fetch_logs_chunked(self, from_block: int, addresses: List[str], topics: List[str]) -> List[Dict]:
        latest = await self.w3.eth.block_number
        logs = []
        start = from_block
        while start <= latest:
            end = min(start + self.log_block_range - 1, latest)
            logs.extend(await self.w3.eth.get_logs({
                "fromBlock": start,
                "toBlock": end,
                "address": addresses,
                "topics": [topics],
            }))
            start = end + 1
        return logs

    async def show_position(self, index: int) -> PositionPreview:
        """Fresh on-chain state of one position"""
        try:
            raw = await self.vault.functions.showPosition(index).call()
        except BadFunctionCallOutput as e:
            raise DecodeError(f"Cannot decode showPosition({index}): {e}") from e
        except Exception as e:
            raise TransportError(f"showPosition({index}) failed: {e}") from e

        try:
            return PositionPreview(
                index=index,
                owner=raw[self._fields["owner"]],
                borrow_type=int(raw[self._fields["borrowType"]]),
                liquidatable=bool(raw[self._fields["liquidatable"]]),
                liquidated_at=int(raw[self._fields["liquidatedAt"]]),
            )
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise DecodeError(f"Unexpected showPosition({index}) result: {e}") from e

    async def open_position_indexes(self) -> List[int]:
        """All open positions according to the vault itself"""
        try:
            indexes = await self.vault.functions.openPositionsIndexes().call()
        except BadFunctionCallOutput as e:
            raise DecodeError(f"Cannot decode openPositionsIndexes: {e}") from e
        except Exception as e:
            raise TransportError(f"openPositionsIndexes failed: {e}") from e
        return [int(i) for i in indexes]

    async def chain_id(self) -> int:
        return await self._rpc(self.w3.eth.chain_id, "eth_chainId")

    async def pending_nonce(self, address: str) -> int:
        return await self._rpc(self.w3.eth.get_transaction_count(address, "pending"), "eth_getTransactionCount")

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return await self._rpc(self.w3.eth.estimate_gas(tx), "eth_estimateGas")

    async def suggest_priority_fee(self) -> int:
        """Suggested tip; fails on networks without the priority-fee model"""
        return await self._rpc(self.w3.eth.max_priority_fee, "eth_maxPriorityFeePerGas")

    async def suggest_gas_price(self) -> int:
        return await self._rpc(self.w3.eth.gas_price, "eth_gasPrice")

    # ===========================================
    # SEND
    # ===========================================

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        tx_hash = await self._rpc(self.w3.eth.send_raw_transaction(raw_transaction), "eth_sendRawTransaction")
        return encode_hex(bytes(tx_hash))

    async def close(self):
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    async def _rpc(self, awaitable, method: str):
        try:
            return await awaitable
        except Exception as e:
            raise TransportError(f"{method} failed: {e}") from e
