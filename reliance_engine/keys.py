"""
Key management module for the Reliance Engine.

Holds the counterparty public keys used to check liveness proofs, and
the Ed25519 primitives shared with the tooling.
"""

import json
import os
import threading
from typing import Any, Dict, Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .util import b64d, b64e


class TrustStore:
    """
    File-backed trust store of counterparty Ed25519 keys.

    Layout::

        {
          "trust_store_id": "...",
          "counterparty_keys": {
            "<kid>": {"counterparty_id": "BANK-001", "public_key_b64": "..."}
          }
        }

    Thread-safe; reloads when the file's modification time changes.
    """

    def __init__(self, path: str):
        self._path = path
        self._lock = threading.RLock()
        self._cache: Optional[Dict[str, Any]] = None
        self._mtime: float = 0

    def load(self) -> Dict[str, Any]:
        with self._lock:
            try:
                mtime = os.path.getmtime(self._path)
                if self._cache is None or mtime > self._mtime:
                    with open(self._path, "r", encoding="utf-8") as f:
                        self._cache = json.load(f)
                    self._mtime = mtime
            except FileNotFoundError:
                if self._cache is None:
                    raise

            return self._cache

    def public_key(self, counterparty_id: str, kid: str) -> Optional[str]:
        """
        Base64 public key registered for ``kid``, or None if the kid is
        unknown or belongs to a different counterparty.
        """
        entry = self.load().get("counterparty_keys", {}).get(kid)
        if not entry or entry.get("counterparty_id") != counterparty_id:
            return None
        return entry.get("public_key_b64")


def verify_ed25519(signature_b64: str, payload: bytes, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    Returns:
        True if signature is valid, False otherwise (including malformed input)
    """
    try:
        vk = VerifyKey(b64d(public_key_b64))
        vk.verify(payload, b64d(signature_b64))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


def generate_keypair() -> Tuple[str, str]:
    """New Ed25519 key pair as (private_key_b64, public_key_b64)."""
    sk = SigningKey.generate()
    return b64e(bytes(sk)), b64e(bytes(sk.verify_key))


def sign_ed25519(payload: bytes, private_key_b64: str) -> str:
    """Detached Ed25519 signature, base64."""
    return b64e(SigningKey(b64d(private_key_b64)).sign(payload).signature)
