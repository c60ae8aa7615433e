# Config package
from config.contracts import (
    CHUNK_SIZE,
    DEFAULT_START_BLOCK,
    INSURANCE_GRACE_SECONDS,
    LIQUIDATOR_ABI,
    ORACLE_ABI,
    VAULT_ABI,
    load_abi,
)
