"""
Canonical hashing and the signer capability.

The core never holds key material itself: it asks a Signer to sign a
message under a key reference. LocalKeySigner is an in-process stand-in
backed by eth_account keys, suitable for local development and tests.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Optional, Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import keccak


class Signer(Protocol):
    def sign(self, key_ref: str, message: str) -> str: ...


class LocalKeySigner:
    """Signer holding eth_account keys by reference (EIP-191 personal messages)."""

    def __init__(self, keys: Optional[Mapping[str, str]] = None):
        self._accounts: dict[str, LocalAccount] = {}
        for key_ref, private_key in (keys or {}).items():
            self.add_key(key_ref, private_key)

    def add_key(self, key_ref: str, private_key: str) -> str:
        account = Account.from_key(private_key)
        self._accounts[key_ref] = account
        return account.address

    def create_key(self, key_ref: str) -> str:
        account = Account.create()
        self._accounts[key_ref] = account
        return account.address

    def address_for(self, key_ref: str) -> str:
        return self._account(key_ref).address

    def sign(self, key_ref: str, message: str) -> str:
        signed = self._account(key_ref).sign_message(encode_defunct(text=message))
        return "0x" + bytes(signed.signature).hex()

    def _account(self, key_ref: str) -> LocalAccount:
        account = self._accounts.get(key_ref)
        if account is None:
            raise KeyError(f"Unknown key reference: {key_ref}")
        return account


def verify_signature(address: str, message: str, signature: str) -> bool:
    """Return True if `signature` over `message` recovers to `address`."""
    try:
        sig = signature[2:] if signature.startswith("0x") else signature
        recovered = Account.recover_message(
            encode_defunct(text=message),
            signature=bytes.fromhex(sig),
        )
    except Exception:
        return False
    return recovered.lower() == address.lower()


def canonical_json_bytes(value: Any) -> bytes:
    """Serialize JSON using deterministic ordering and no insignificant whitespace."""
    return json.dumps(
        _normalize_for_canonical_json(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_json_hash(value: Any) -> str:
    """Return keccak256 hash of canonical JSON bytes."""
    return "0x" + keccak(canonical_json_bytes(value)).hex()


def _normalize_for_canonical_json(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _normalize_for_canonical_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_canonical_json(item) for item in value]
    if isinstance(value, float):
        raise ValueError("Floats are not allowed in canonical payloads")
    if isinstance(value, (str, int, bool)) or value is None:
        return value
    raise ValueError(f"Unsupported JSON canonicalization value type: {type(value).__name__}")
