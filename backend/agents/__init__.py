"""
Vault Liquidator - Agents

- PositionIndex: open positions believed to exist on the vault
- EventReconciler / VaultScanReconciler: keep the index current
- PositionEvaluator: liquidatable / claimable classification
- Liquidator: wires everything together and owns termination
"""

from .errors import (
    LiquidatorError,
    TransportError,
    DecodeError,
    EvaluationError,
    SubmissionError,
    ReorgDetectedError,
    ConfigError,
    KeystoreError,
)
from .position_index import PositionIndex

__all__ = [
    "LiquidatorError",
    "TransportError",
    "DecodeError",
    "EvaluationError",
    "SubmissionError",
    "ReorgDetectedError",
    "ConfigError",
    "KeystoreError",
    "PositionIndex",
]
