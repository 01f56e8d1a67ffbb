"""
Split-key confidentiality vault.

Each record is sealed under a fresh AES-256-GCM key. The key is never
stored: both 256-bit shards are drawn from the OS CSPRNG and the key is
shard_a XOR shard_b, built straight into a wipeable buffer. Either shard
alone is uniformly random, so both custodians must cooperate to read the
record again.
"""

import json
import secrets
from dataclasses import dataclass
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import DecryptionError
from .util import canonicalize

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


class KeyBuffer:
    """
    Mutable key buffer that is zeroed when the ``with`` block exits.

    Only this buffer is wiped. The cipher object holds its own copy of the
    key until it is garbage collected, and Python offers no way to clear it.
    """

    def __init__(self, size: int = KEY_BYTES):
        self._buf = bytearray(size)

    def __enter__(self) -> bytearray:
        return self._buf

    def __exit__(self, *exc) -> None:
        self.wipe()

    def wipe(self) -> None:
        for i in range(len(self._buf)):
            self._buf[i] = 0


@dataclass(frozen=True)
class SealedRecord:
    """An encrypted record and both halves of its key."""
    ciphertext: bytes
    nonce: bytes
    tag: bytes
    shard_a: bytes
    shard_b: bytes

    def evidence(self) -> Dict[str, str]:
        """Fields retained by the issuing side (everything except shard B)."""
        return {
            "encrypted_blob": self.ciphertext.hex(),
            "nonce": self.nonce.hex(),
            "auth_tag": self.tag.hex(),
            "shard_a": self.shard_a.hex(),
        }


def _xor_into(out: bytearray, a: bytes, b: bytes) -> None:
    for i in range(len(out)):
        out[i] = a[i] ^ b[i]


def encrypt(record: Any) -> SealedRecord:
    """
    Seal a JSON-serializable record.

    Returns ciphertext, nonce, tag and both key shards. Nothing is persisted.
    """
    plaintext = canonicalize(record)
    nonce = secrets.token_bytes(NONCE_BYTES)
    shard_a = secrets.token_bytes(KEY_BYTES)
    # the key itself only ever exists inside the wiped buffer
    shard_b = secrets.token_bytes(KEY_BYTES)

    with KeyBuffer() as key:
        _xor_into(key, shard_a, shard_b)
        sealed = AESGCM(key).encrypt(nonce, plaintext, None)

    return SealedRecord(
        ciphertext=sealed[:-TAG_BYTES],
        nonce=nonce,
        tag=sealed[-TAG_BYTES:],
        shard_a=shard_a,
        shard_b=shard_b,
    )


def reconstruct(ciphertext: bytes, nonce: bytes, tag: bytes, shard_a: bytes, shard_b: bytes) -> Any:
    """
    Rejoin the shards and open the record.

    Raises:
        DecryptionError: wrong shard length, bad nonce/tag length, tag
            mismatch, or a plaintext that is not the JSON we sealed.
    """
    if len(shard_a) != KEY_BYTES or len(shard_b) != KEY_BYTES:
        raise DecryptionError("key shards must be exactly 256 bits")
    if len(nonce) != NONCE_BYTES:
        raise DecryptionError("nonce must be 96 bits")
    if len(tag) != TAG_BYTES:
        raise DecryptionError("authentication tag must be 128 bits")

    with KeyBuffer() as key:
        _xor_into(key, shard_a, shard_b)
        try:
            plaintext = AESGCM(key).decrypt(nonce, bytes(ciphertext) + bytes(tag), None)
        except InvalidTag:
            raise DecryptionError("authentication tag did not verify") from None

    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise DecryptionError("sealed payload is malformed") from None


def reconstruct_hex(evidence: Dict[str, str], shard_b_hex: str) -> Any:
    """Reconstruct from a stored evidence record and a hex shard B."""
    try:
        return reconstruct(
            bytes.fromhex(evidence["encrypted_blob"]),
            bytes.fromhex(evidence["nonce"]),
            bytes.fromhex(evidence["auth_tag"]),
            bytes.fromhex(evidence["shard_a"]),
            bytes.fromhex(shard_b_hex),
        )
    except (KeyError, ValueError, TypeError):
        raise DecryptionError("evidence or shard is not valid hex") from None
