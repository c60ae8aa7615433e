"""
Liquidator Services
Keystore import and transaction signing
"""

from .keystore import Signer, import_private_key, load_signer

__all__ = [
    "Signer",
    "import_private_key",
    "load_signer",
]
