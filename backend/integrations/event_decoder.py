"""
Event Decoder
Maps log topics to vault lifecycle / oracle events and decodes raw logs.

The topic -> event mapping is built once from the contract ABIs and handed to
the reconciler; logs may come from eth_getLogs (web3 AttributeDicts with
HexBytes) or from a websocket subscription (plain JSON with hex strings).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from eth_abi import decode
from eth_utils import decode_hex, encode_hex, event_abi_to_log_topic, to_int

from agents.errors import DecodeError


class EventKind(Enum):
    POSITION_OPENED = "PositionOpened"
    POSITION_CLOSED = "PositionClosed"
    REPURCHASED = "Repurchased"
    INSURANCE_EXPIRED = "InsuranceExpired"
    LIQUIDATED = "Liquidated"
    PRICE_UPDATED = "AnswerUpdated"


# Events that take a position out of the index unconditionally
CLOSING_KINDS = (
    EventKind.POSITION_CLOSED,
    EventKind.REPURCHASED,
    EventKind.INSURANCE_EXPIRED,
)


@dataclass(frozen=True)
class VaultEvent:
    """Single decoded log"""
    kind: EventKind
    block_number: int
    log_index: int
    position_index: Optional[int] = None
    tx_hash: Optional[str] = None
    removed: bool = False

    @property
    def order(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class _EventSpec:
    kind: EventKind
    abi: Dict
    index_topic: Optional[int]
    index_type: Optional[str]


def _as_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return encode_hex(bytes(value)).lower()
    value = str(value).lower()
    return value if value.startswith("0x") else "0x" + value


def _as_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return to_int(hexstr=value)


class EventRegistry:
    """
    Topic hash -> event handler mapping.

    Only events named in EventKind are registered; other ABI entries are
    ignored. Lifecycle events must carry an indexed "index" input.
    """

    def __init__(self, specs: Dict[str, _EventSpec]):
        self._specs = specs

    @classmethod
    def from_abis(cls, vault_abi: List[Dict], oracle_abi: List[Dict]) -> "EventRegistry":
        names = {kind.value: kind for kind in EventKind}
        specs: Dict[str, _EventSpec] = {}

        for abi in list(vault_abi) + list(oracle_abi):
            if abi.get("type") != "event" or abi.get("name") not in names:
                continue

            kind = names[abi["name"]]
            index_topic = None
            index_type = None

            if kind != EventKind.PRICE_UPDATED:
                indexed = [i for i in abi["inputs"] if i.get("indexed")]
                for position, inp in enumerate(indexed):
                    if inp["name"] in ("index", "_index", "nftIndex", "_nftIndex"):
                        index_topic = position + 1
                        index_type = inp["type"]
                if index_topic is None:
                    raise DecodeError(f"Event {abi['name']} has no indexed position index input")

            topic = _as_hex(event_abi_to_log_topic(abi))
            specs[topic] = _EventSpec(kind, abi, index_topic, index_type)

        return cls(specs)

    def topics_for(self, *kinds: EventKind) -> List[str]:
        return [topic for topic, spec in self._specs.items() if spec.kind in kinds]

    @property
    def lifecycle_topics(self) -> List[str]:
        return [t for t, s in self._specs.items() if s.kind != EventKind.PRICE_UPDATED]

    @property
    def price_topics(self) -> List[str]:
        return self.topics_for(EventKind.PRICE_UPDATED)

    def decode(self, log: Mapping) -> VaultEvent:
        """Decode one raw log into a VaultEvent, raising DecodeError on anything unexpected."""
        try:
            topics = [_as_hex(t) for t in log["topics"]]
            block_number = _as_int(log["blockNumber"])
            log_index = _as_int(log.get("logIndex", 0))
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Malformed log: {e}") from e

        if not topics:
            raise DecodeError(f"Log at block {block_number} has no topics")

        spec = self._specs.get(topics[0])
        if spec is None:
            raise DecodeError(f"Unknown event topic {topics[0]} at block {block_number}")

        position_index = None
        if spec.index_topic is not None:
            if len(topics) <= spec.index_topic:
                raise DecodeError(f"{spec.kind.value} log at block {block_number} is missing indexed topics")
            try:
                (position_index,) = decode([spec.index_type], decode_hex(topics[spec.index_topic]))
            except Exception as e:
                raise DecodeError(f"Cannot decode {spec.kind.value} index: {e}") from e

        tx_hash = log.get("transactionHash")
        return VaultEvent(
            kind=spec.kind,
            block_number=block_number,
            log_index=log_index,
            position_index=position_index,
            tx_hash=_as_hex(tx_hash) if tx_hash is not None else None,
            removed=bool(log.get("removed", False)),
        )
