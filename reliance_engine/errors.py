"""
Exception hierarchy for the Reliance Engine.

Every error carries a stable machine-readable reason and the HTTP status
class the API layer answers with.
"""

from typing import Optional


class RelianceError(Exception):
    """Base class for all reliance engine errors."""
    status_code = 500
    reason = "INTERNAL_ERROR"

    def __init__(self, message: Optional[str] = None, reason: Optional[str] = None):
        if reason:
            self.reason = reason
        self.message = message or self.reason
        super().__init__(self.message)


class DecryptionError(RelianceError):
    """Tag did not verify, shard was malformed, or ciphertext was corrupt."""
    status_code = 422
    reason = "DECRYPTION_FAILED"


class CredentialRevoked(RelianceError):
    status_code = 401
    reason = "CREDENTIAL_REVOKED"


class RevocationUnavailable(RelianceError):
    """The shared revocation store could not be reached. Fail closed."""
    status_code = 503
    reason = "REVOCATION_LIST_UNAVAILABLE"


class RelianceSuspended(RelianceError):
    """The kill switch is engaged for the counterparty."""
    status_code = 503
    reason = "RELIANCE_SUSPENDED"


class LedgerWriteError(RelianceError):
    status_code = 503
    reason = "LEDGER_UNAVAILABLE"


class EvidenceStoreError(RelianceError):
    status_code = 503
    reason = "EVIDENCE_STORE_UNAVAILABLE"


class DuplicateTransaction(RelianceError):
    status_code = 409
    reason = "DUPLICATE_TRANSACTION"


class EvidenceNotFound(RelianceError):
    status_code = 404
    reason = "EVIDENCE_NOT_FOUND"


class WalWriteError(RelianceError):
    """The write-ahead log could not durably persist an event."""
    status_code = 503
    reason = "WAL_UNAVAILABLE"


class QueueUnavailable(RelianceError):
    """The notification queue's shared store could not be reached."""
    status_code = 503
    reason = "QUEUE_UNAVAILABLE"
