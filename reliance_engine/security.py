"""
Security module for the Reliance Engine.

Provides the ledger sanitization policy, input validation and
bearer-token checks.
"""

import hashlib
import re
from enum import Enum
from typing import Any, Dict, Optional

from .util import canonicalize, constant_time_compare


# ============================================================
# Ledger Sanitization
# ============================================================

HASH_TYPE_SUFFIX = "_hash_type"
HASH_TYPE = "SHA256"
REDACTED = "[REDACTED]"


class FieldPolicy(str, Enum):
    HASH = "HASH"        # replace with SHA-256 hex, add <field>_hash_type marker
    REDACT = "REDACT"    # replace with the literal redaction marker
    RECURSE = "RECURSE"  # sanitize nested value with the same rules


PII_FIELDS = frozenset({
    "FrstNm", "Srnm", "DtOfBirth", "Id",
    "legal_name", "first_name", "surname", "date_of_birth", "tin",
})

SECRET_FIELDS = frozenset({
    "warranty_token", "warrantyToken", "token", "password", "secret",
    "shard_a", "shard_b", "encrypted_blob", "ciphertext",
    "auth_tag", "tag", "iv", "nonce",
})

FIELD_POLICY: Dict[str, FieldPolicy] = {
    **{name: FieldPolicy.HASH for name in PII_FIELDS},
    **{name: FieldPolicy.REDACT for name in SECRET_FIELDS},
}


def pii_digest(value: Any) -> str:
    """SHA-256 hex of a PII value. Strings are hashed as-is, anything else as canonical JSON."""
    data = value.encode("utf-8") if isinstance(value, str) else canonicalize(value)
    return hashlib.sha256(data).hexdigest()


def sanitize(value: Any) -> Any:
    """
    Return a sanitized copy of a JSON-shaped value.

    Mappings are rewritten field by field according to FIELD_POLICY,
    sequences element by element; scalars pass through unchanged.
    The input is never mutated.
    """
    if isinstance(value, dict):
        return _sanitize_mapping(value)
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    return value


def _sanitize_mapping(data: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in data.items():
        policy = FIELD_POLICY.get(key, FieldPolicy.RECURSE)
        if policy is FieldPolicy.HASH:
            result[key] = pii_digest(value)
            result[f"{key}{HASH_TYPE_SUFFIX}"] = HASH_TYPE
        elif policy is FieldPolicy.REDACT:
            result[key] = REDACTED
        else:
            result[key] = sanitize(value)
    return result


# ============================================================
# Input Validation
# ============================================================

HEX_PATTERN = re.compile(r'^[a-fA-F0-9]+$')


class ValidationError(Exception):
    """Raised when input validation fails."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def validate_hex(value: str, field_name: str, expected_length: Optional[int] = None) -> str:
    """
    Validate that a string is valid hexadecimal.

    Returns:
        The validated (lowercased) hex string

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")

    value = value.lower().strip()

    if not value:
        raise ValidationError(field_name, "cannot be empty")

    if not HEX_PATTERN.match(value):
        raise ValidationError(field_name, "must be valid hexadecimal")

    if expected_length and len(value) != expected_length:
        raise ValidationError(field_name, f"must be {expected_length} characters")

    return value


def validate_shard_hex(value: str) -> str:
    """A key shard is 32 bytes, 64 hex characters."""
    return validate_hex(value, "shard_b", expected_length=64)


# ============================================================
# Bearer Tokens
# ============================================================

def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def token_matches(presented: Optional[str], expected: str) -> bool:
    """Constant-time token check. An unconfigured expected token never matches."""
    if not presented or not expected:
        return False
    return constant_time_compare(presented, expected)
