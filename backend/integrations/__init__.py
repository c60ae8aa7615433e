"""
Integrations Module
Chain access, log decoding and transaction submission
"""

from .chain_client import ChainClient, PositionPreview
from .event_decoder import EventKind, EventRegistry, VaultEvent

__all__ = ["ChainClient", "PositionPreview", "EventKind", "EventRegistry", "VaultEvent"]
