"""
Liquidator Settings
Validated runtime configuration.

Sources, lowest to highest precedence:
1. JSON config file (./config.json by default, camelCase keys)
2. Environment variables (LIQUIDATOR_*; .env is loaded by the CLI)
3. Command-line flags
"""

import json
import os
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from agents.errors import ConfigError
from config.contracts import CHUNK_SIZE, DEFAULT_START_BLOCK

DEFAULT_CONFIG_PATH = "./config.json"

# Field -> environment variable
ENV_VARS = {
    "vault_address": "LIQUIDATOR_VAULT_ADDRESS",
    "liquidator_address": "LIQUIDATOR_CONTRACT_ADDRESS",
    "oracles": "LIQUIDATOR_ORACLES",
    "rpc_url": "LIQUIDATOR_RPC_URL",
    "ws_url": "LIQUIDATOR_WS_URL",
    "max_gas_price_gwei": "LIQUIDATOR_MAX_GAS_PRICE",
    "start_block": "LIQUIDATOR_START_BLOCK",
    "keystore_path": "LIQUIDATOR_KEYSTORE_PATH",
    "wallet_address": "LIQUIDATOR_WALLET_ADDRESS",
    "mode": "LIQUIDATOR_MODE",
    "status_port": "LIQUIDATOR_STATUS_PORT",
}


def _to_checksum(value: str) -> str:
    if not Web3.is_address(value):
        raise ValueError(f"invalid address: {value}")
    return Web3.to_checksum_address(value)


class LiquidatorConfig(BaseModel):
    """Everything the bot needs before the core is constructed"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    vault_address: str = Field(alias="vaultAddress", description="The address of the NFTVault contract")
    liquidator_address: str = Field(alias="liquidatorAddress", description="The address of the Liquidator contract")
    oracles: List[str] = Field(min_length=1, description="The addresses of the chainlink oracles used by the vault")
    rpc_url: str = Field(alias="rpcUrl", description="URL of the ethereum rpc server")
    ws_url: Optional[str] = Field(default=None, alias="wsUrl", description="Websocket URL for log subscriptions")
    max_gas_price_gwei: Decimal = Field(alias="maxGasPrice", gt=0, description="Max gas price to use, in gwei")
    start_block: int = Field(default=DEFAULT_START_BLOCK, alias="startBlock", ge=0)
    keystore_path: str = Field(default="./keystores", alias="keystorePath")
    wallet_address: str = Field(alias="walletAddress", description="The wallet address to use")
    mode: Literal["events", "scan"] = "events"
    chunk_size: int = Field(default=CHUNK_SIZE, alias="chunkSize", ge=1)
    status_port: Optional[int] = Field(default=None, alias="statusPort", ge=1, le=65535)
    vault_abi_path: Optional[str] = Field(default=None, alias="vaultAbiPath")
    log_block_range: Optional[int] = Field(default=None, alias="logBlockRange", ge=1)

    @field_validator("vault_address", "liquidator_address", "wallet_address")
    @classmethod
    def checksum_address(cls, value: str) -> str:
        return _to_checksum(value)

    @field_validator("oracles", mode="before")
    @classmethod
    def split_oracles(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("oracles")
    @classmethod
    def checksum_oracles(cls, value: List[str]) -> List[str]:
        return [_to_checksum(address) for address in value]

    @field_validator("rpc_url", "ws_url")
    @classmethod
    def check_scheme(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.startswith(("http://", "https://", "ws://", "wss://")):
            raise ValueError(f"unsupported URL scheme: {value}")
        return value

    @property
    def max_gas_price(self) -> int:
        """Max gas price in wei"""
        return int(self.max_gas_price_gwei * 10 ** 9)

    @property
    def http_url(self) -> str:
        if self.rpc_url.startswith("ws"):
            return "http" + self.rpc_url[2:]
        return self.rpc_url

    @property
    def websocket_url(self) -> str:
        if self.ws_url:
            return self.ws_url
        if self.rpc_url.startswith("http"):
            return "ws" + self.rpc_url[4:]
        return self.rpc_url


def _field_names() -> Dict[str, str]:
    """Alias or name -> field name"""
    names = {}
    for name, info in LiquidatorConfig.model_fields.items():
        names[name] = name
        if info.alias:
            names[info.alias] = name
    return names


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> LiquidatorConfig:
    """
    Merge file, environment and CLI values and validate them.

    Args:
        path: JSON config file. The default path is optional, an explicit one is not.
        overrides: Field values from the command line; None values are ignored

    Raises:
        ConfigError: unreadable file or invalid values
    """
    names = _field_names()
    data: Dict[str, Any] = {}

    config_path = path or DEFAULT_CONFIG_PATH
    if os.path.exists(config_path):
        try:
            with open(config_path, "r") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Config file {config_path} must contain a JSON object")
        for key, value in raw.items():
            if key in names:
                data[names[key]] = value
    elif path:
        raise ConfigError(f"Config file not found: {path}")

    for field, env_var in ENV_VARS.items():
        value = os.getenv(env_var)
        if value:
            data[field] = value

    for field, value in (overrides or {}).items():
        if value is not None:
            data[names.get(field, field)] = value

    try:
        return LiquidatorConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration:\n{e}") from e
