"""
Vault Liquidator Contract Configuration
Centralized ABIs and protocol constants for the NFT vault, the liquidator
contract and the Chainlink oracles it listens to.
Update here if the deployed contracts change.
"""

import json
from typing import Dict, List, Optional

# ============================================
# PROTOCOL CONSTANTS
# ============================================

# Max positions acted on by a single transaction
CHUNK_SIZE = 10

# Insured positions can be claimed once this grace period has elapsed
INSURANCE_GRACE_SECONDS = 86400 * 3

# Gas limit = estimate * GAS_HEADROOM_NUMERATOR // GAS_HEADROOM_DENOMINATOR
GAS_HEADROOM_NUMERATOR = 12
GAS_HEADROOM_DENOMINATOR = 10

# First block scanned by the backfill when no start block is configured
DEFAULT_START_BLOCK = 28158989

# Liquidator contract entry points
LIQUIDATE_METHOD = "liquidate"
CLAIM_METHOD = "claimExpiredInsuranceNFT"

# Vault BorrowType enum
BORROW_TYPE_NOT_CONFIRMED = 0
BORROW_TYPE_NON_INSURANCE = 1
BORROW_TYPE_USE_INSURANCE = 2

# ============================================
# NFT VAULT ABI (events + the views we read)
# ============================================


def _rate(name: str) -> Dict:
    return {
        "components": [
            {"name": "numerator", "type": "uint128"},
            {"name": "denominator", "type": "uint128"},
        ],
        "name": name,
        "type": "tuple",
    }


VAULT_SETTINGS_COMPONENTS = [
    _rate("debtInterestApr"),
    _rate("creditLimitRate"),
    _rate("liquidationLimitRate"),
    _rate("cigStakedCreditLimitRate"),
    _rate("cigStakedLiquidationLimitRate"),
    _rate("valueIncreaseLockRate"),
    _rate("organizationFeeRate"),
    _rate("insurancePurchaseRate"),
    _rate("insuranceLiquidationPenaltyRate"),
    {"name": "insuraceRepurchaseTimeLimit", "type": "uint256"},
    {"name": "borrowAmountCap", "type": "uint256"},
]

POSITION_PREVIEW_COMPONENTS = [
    {"name": "owner", "type": "address"},
    {"name": "nftIndex", "type": "uint256"},
    {"name": "nftType", "type": "bytes32"},
    {"name": "nftValueUSD", "type": "uint256"},
    {"components": VAULT_SETTINGS_COMPONENTS, "name": "vaultSettings", "type": "tuple"},
    {"name": "creditLimit", "type": "uint256"},
    {"name": "debtPrincipal", "type": "uint256"},
    {"name": "debtInterest", "type": "uint256"},
    {"name": "borrowType", "type": "uint8"},
    {"name": "liquidatable", "type": "bool"},
    {"name": "liquidatedAt", "type": "uint256"},
    {"name": "liquidator", "type": "address"},
]

VAULT_ABI = [
    # Position lifecycle events
    {"anonymous": False, "inputs": [{"indexed": True, "name": "owner", "type": "address"}, {"indexed": True, "name": "index", "type": "uint256"}], "name": "PositionOpened", "type": "event"},
    {"anonymous": False, "inputs": [{"indexed": True, "name": "owner", "type": "address"}, {"indexed": True, "name": "index", "type": "uint256"}], "name": "PositionClosed", "type": "event"},
    {"anonymous": False, "inputs": [{"indexed": True, "name": "liquidator", "type": "address"}, {"indexed": True, "name": "owner", "type": "address"}, {"indexed": True, "name": "index", "type": "uint256"}, {"indexed": False, "name": "insured", "type": "bool"}], "name": "Liquidated", "type": "event"},
    {"anonymous": False, "inputs": [{"indexed": True, "name": "owner", "type": "address"}, {"indexed": True, "name": "index", "type": "uint256"}], "name": "Repurchased", "type": "event"},
    {"anonymous": False, "inputs": [{"indexed": True, "name": "owner", "type": "address"}, {"indexed": True, "name": "index", "type": "uint256"}], "name": "InsuranceExpired", "type": "event"},

    # Views
    {"inputs": [{"name": "_nftIndex", "type": "uint256"}], "name": "showPosition", "outputs": [{"components": POSITION_PREVIEW_COMPONENTS, "name": "preview", "type": "tuple"}], "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "openPositionsIndexes", "outputs": [{"name": "", "type": "uint256[]"}], "stateMutability": "view", "type": "function"},
]

# ============================================
# LIQUIDATOR CONTRACT ABI
# ============================================

LIQUIDATOR_ABI = [
    {"inputs": [{"name": "_toLiquidate", "type": "uint256[]"}], "name": LIQUIDATE_METHOD, "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"name": "_toClaim", "type": "uint256[]"}], "name": CLAIM_METHOD, "outputs": [], "stateMutability": "nonpayable", "type": "function"},
]

# ============================================
# CHAINLINK AGGREGATOR ABI
# ============================================

ORACLE_ABI = [
    {"anonymous": False, "inputs": [{"indexed": True, "name": "current", "type": "int256"}, {"indexed": True, "name": "roundId", "type": "uint256"}, {"indexed": False, "name": "updatedAt", "type": "uint256"}], "name": "AnswerUpdated", "type": "event"},
]


def load_abi(path: Optional[str], default: List[Dict]) -> List[Dict]:
    """Load an ABI from a JSON file, falling back to the bundled one.

    Accepts either a bare ABI list or a hardhat artifact with an "abi" key.
    """
    if not path:
        return default

    with open(path, "r") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("abi", [])
    return data
