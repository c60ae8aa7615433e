#!/usr/bin/env python3
"""
Vault Liquidator - command line entry point

Commands:
- keystore: Import a private key into an encrypted keystore file
- liquidator: Run the liquidator bot until the first fatal error
"""

import argparse
import asyncio
import getpass
import logging
import os
import sys

from dotenv import load_dotenv

# Load environment variables from .env BEFORE reading any config
load_dotenv()

from agents.errors import LiquidatorError
from agents.orchestrator import Liquidator
from config.contracts import ORACLE_ABI, VAULT_ABI, load_abi
from config.settings import load_config
from integrations.chain_client import ChainClient
from integrations.event_decoder import EventRegistry
from services.keystore import import_private_key, load_signer

logger = logging.getLogger("liquidator")

PASSWORD_ENV = "LIQUIDATOR_KEYSTORE_PASSWORD"


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def cmd_keystore(args) -> int:
    private_key = getpass.getpass("Private key: ")
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        print("Passwords do not match", file=sys.stderr)
        return 1

    try:
        address = import_private_key(private_key, password, args.out_dir)
    except LiquidatorError as e:
        print(f"Cannot import key: {e}", file=sys.stderr)
        return 1

    print(f"Imported account {address} into {args.out_dir}")
    return 0


def _overrides(args) -> dict:
    return {
        "vault_address": args.vault_address,
        "liquidator_address": args.liquidator_address,
        "oracles": args.oracles,
        "rpc_url": args.rpc_url,
        "ws_url": args.ws_url,
        "max_gas_price_gwei": args.max_gas_price,
        "start_block": args.start_block,
        "keystore_path": args.keystore_path,
        "wallet_address": args.wallet_address,
        "mode": args.mode,
        "status_port": args.status_port,
    }


async def run_liquidator(config, signer):
    vault_abi = load_abi(config.vault_abi_path, VAULT_ABI)
    chain = ChainClient(
        config.http_url,
        config.websocket_url,
        config.vault_address,
        vault_abi=vault_abi,
        log_block_range=config.log_block_range,
    )

    liquidator = Liquidator(
        chain,
        signer,
        config.vault_address,
        config.liquidator_address,
        config.oracles,
        config.max_gas_price,
        start_block=config.start_block,
        mode=config.mode,
        chunk_size=config.chunk_size,
        registry=EventRegistry.from_abis(vault_abi, ORACLE_ABI),
        status_port=config.status_port,
    )

    try:
        await liquidator.start()
    finally:
        await chain.close()


def cmd_liquidator(args) -> int:
    try:
        config = load_config(args.config, _overrides(args))
        password = os.getenv(PASSWORD_ENV) or getpass.getpass(f"Password for {config.wallet_address}: ")
        signer = load_signer(config.wallet_address, config.keystore_path, password)
    except LiquidatorError as e:
        logger.error(f"[Main] {e}")
        return 1

    try:
        asyncio.run(run_liquidator(config, signer))
    except KeyboardInterrupt:
        logger.info("[Main] Interrupted, shutting down")
        return 0
    except Exception as e:
        logger.error(f"[Main] Liquidator stopped: {e}")
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Liquidates vault positions and claims NFTs from positions with expired insurance",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ks_parser = subparsers.add_parser("keystore", help="Import a private key into a keystore file")
    ks_parser.add_argument("--out-dir", default="./keystores", help="Keystore directory (default: ./keystores)")

    liq_parser = subparsers.add_parser("liquidator", help="Run the liquidator bot")
    liq_parser.add_argument("--config", default=None, help="JSON config file (default: ./config.json if present)")
    liq_parser.add_argument("--vault-address", help="The address of the NFTVault contract")
    liq_parser.add_argument("--liquidator-address", help="The address of the Liquidator contract")
    liq_parser.add_argument("--oracles", nargs="+", help="The addresses of the chainlink oracles used by the vault")
    liq_parser.add_argument("--rpc-url", help="URL of the ethereum rpc server")
    liq_parser.add_argument("--ws-url", help="Websocket URL for log subscriptions (default: derived from --rpc-url)")
    liq_parser.add_argument("--max-gas-price", help="Max gas price to use, in gwei")
    liq_parser.add_argument("--start-block", type=int, help="First block of the event backfill")
    liq_parser.add_argument("--keystore-path", help="Keystore directory")
    liq_parser.add_argument("--wallet-address", help="The wallet address to use")
    liq_parser.add_argument("--mode", choices=["events", "scan"], help="Position tracking strategy")
    liq_parser.add_argument("--status-port", type=int, help="Serve the status API on this port")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "keystore":
        return cmd_keystore(args)
    return cmd_liquidator(args)


if __name__ == "__main__":
    sys.exit(main())
