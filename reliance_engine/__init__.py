"""
Reliance Engine

A trust intermediary that lets a counterparty (a bank) assert KYC facts
about an investor to a fund administrator without the administrator ever
holding the investor's personal data at rest.

Components:
- vault: split-key AES-256-GCM sealing; shard A stays here, shard B goes
  back to the counterparty
- ledger: sanitized, hash-chained audit trail over pluggable sinks
- liveness: signed challenge-response probe and the
  ACTIVE -> WARNING -> SUSPENDED kill switch
- notifications: WAL-backed, HMAC-signed, retried webhook delivery
- revocation: fail-closed revoked-credential set in Redis
- orchestrator: the onboarding use case composing all of the above

Run the API with ``python -m reliance_engine.main``.
"""

__version__ = "1.0.0"
