"""
Keystore Management
Imports private keys into password-protected keystore files and unlocks them
into a transaction Signer.

Files use the geth keystore v3 JSON format (eth_account.Account.encrypt), so
keystores created by geth or other tooling can be dropped into the same
directory.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from agents.errors import KeystoreError

logger = logging.getLogger(__name__)


class Signer:
    """Signs liquidator transactions with an unlocked keystore account"""

    def __init__(self, account: LocalAccount):
        self._account = account

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, transaction: Dict[str, Any], chain_id: int):
        """Sign a transaction dict for the given chain. Returns eth_account's SignedTransaction."""
        tx = dict(transaction)
        tx["chainId"] = chain_id
        return self._account.sign_transaction(tx)


def _keystore_filename(address: str) -> str:
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S.%f000Z")
    return f"UTC--{ts}--{address[2:].lower()}"


def import_private_key(private_key: str, password: str, out_dir: str = "./keystores") -> str:
    """
    Encrypt a private key into a new keystore file.

    Args:
        private_key: Hex private key, with or without 0x prefix
        password: Encryption password
        out_dir: Keystore directory (created if missing)

    Returns:
        Checksummed address of the imported account
    """
    key = private_key.strip()
    if not key.startswith("0x"):
        key = "0x" + key

    try:
        account = Account.from_key(key)
    except Exception as e:
        raise KeystoreError(f"Invalid private key: {e}") from e

    if find_keystore_file(account.address, out_dir):
        raise KeystoreError(f"Account {account.address} already exists in {out_dir}")

    encrypted = Account.encrypt(key, password)

    os.makedirs(out_dir, exist_ok=True)
    path = os.path.join(out_dir, _keystore_filename(account.address))
    with open(path, "w") as f:
        json.dump(encrypted, f)

    logger.info(f"[Keystore] Account {account.address} imported into {out_dir}")
    return account.address


def find_keystore_file(address: str, keystore_path: str) -> Optional[str]:
    """Path of the keystore file holding address, or None"""
    if not os.path.isdir(keystore_path):
        return None

    wanted = address.lower().replace("0x", "")
    for name in sorted(os.listdir(keystore_path)):
        path = os.path.join(keystore_path, name)
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError):
            continue
        if isinstance(data, dict) and str(data.get("address", "")).lower().replace("0x", "") == wanted:
            return path
    return None


def load_signer(address: str, keystore_path: str, password: str) -> Signer:
    """
    Unlock the keystore entry for address.

    Raises:
        KeystoreError: address not found or wrong password
    """
    if not Web3.is_address(address):
        raise KeystoreError(f"Invalid wallet address: {address}")

    path = find_keystore_file(address, keystore_path)
    if path is None:
        raise KeystoreError(f"Cannot find address {address} in keystore {keystore_path}")

    with open(path, "r") as f:
        encrypted = json.load(f)

    try:
        private_key = Account.decrypt(encrypted, password)
    except ValueError as e:
        raise KeystoreError(f"Cannot unlock {address}: {e}") from e

    account = Account.from_key(private_key)
    logger.info(f"[Keystore] Unlocked {account.address}")
    return Signer(account)
