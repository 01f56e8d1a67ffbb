"""
Onboarding use case: the per-request composition of the engine.

Order per request:
    ledger writable -> not SUSPENDED -> credential not revoked -> seal
    -> store evidence -> ledger entry -> notify (async) -> shard B out

Gate failures raise RelianceError subclasses; nothing is stored for a
rejected request.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from . import vault
from .db import EvidenceStore
from .errors import CredentialRevoked, DecryptionError, LedgerWriteError, RelianceError, RelianceSuspended
from .ledger import AuditLedger
from .liveness import LivenessMonitor, Transition, TrustStatus
from .logging_config import event_log
from .notifications import NotificationQueue, build_verified_event
from .revocation import RevocationRegistry
from .util import now_epoch, utc_rfc3339

logger = logging.getLogger(__name__)

ONBOARD_INVESTOR = "ONBOARD_INVESTOR"
RELIANCE_STATE_CHANGE = "RELIANCE_STATE_CHANGE"
RELIANCE_MANUAL_RESET = "RELIANCE_MANUAL_RESET"
EVIDENCE_RECONSTRUCTED = "EVIDENCE_RECONSTRUCTED"
EVIDENCE_RECONSTRUCT_FAILED = "EVIDENCE_RECONSTRUCT_FAILED"

VERIFIED_AND_SECURED = "VERIFIED_AND_SECURED"
AUDIT_RECORDED = "RECORDED"
AUDIT_DEGRADED = "DEGRADED"


@dataclass(frozen=True)
class OnboardingResult:
    transaction_id: str
    status: str
    shard_b: str
    reliance_status: str
    manual_review_required: bool
    audit: str
    ledger_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OnboardingOrchestrator:
    def __init__(
        self,
        monitor: LivenessMonitor,
        revocations: RevocationRegistry,
        evidence: EvidenceStore,
        ledger: AuditLedger,
        queue: Optional[NotificationQueue] = None,
        fund_id: str = "",
        clock: Callable[[], float] = now_epoch,
    ):
        self.monitor = monitor
        self.revocations = revocations
        self.evidence = evidence
        self.ledger = ledger
        self.queue = queue
        self.fund_id = fund_id
        self._clock = clock

    def onboard(
        self,
        transaction_id: str,
        counterparty_id: str,
        investor_profile: Dict[str, Any],
        warranty_token: str,
        kyc_status: str,
        screening_status: str = "CLEAR",
        fund_id: Optional[str] = None,
    ) -> OnboardingResult:
        """
        Seal an investor profile on the counterparty's warranty.

        Raises:
            LedgerWriteError: the audit ledger is unhealthy; nothing is accepted.
            RelianceSuspended: the kill switch is engaged.
            CredentialRevoked / RevocationUnavailable: the warranty token
                is revoked or its status cannot be established.
            DuplicateTransaction / EvidenceStoreError: evidence was not stored.
        """
        try:
            if not self.ledger.ensure_writable():
                raise LedgerWriteError("audit ledger unavailable; refusing new onboarding")

            state = self.monitor.current_state()
            if state.status is TrustStatus.SUSPENDED:
                raise RelianceSuspended(f"reliance on {counterparty_id} is suspended: {state.reason}")

            if self.revocations.is_revoked(warranty_token):
                event_log.security_event("REVOKED_CREDENTIAL_PRESENTED", "high", transaction_id=transaction_id)
                raise CredentialRevoked("warranty token has been revoked")

            sealed = vault.encrypt(investor_profile)
            self.evidence.put(transaction_id, counterparty_id, utc_rfc3339(self._clock()), sealed.evidence())
        except RelianceError as e:
            event_log.onboarding_rejected(transaction_id, counterparty_id, e.reason)
            raise

        manual_review = state.status is TrustStatus.WARNING
        audit, ledger_hash = AUDIT_RECORDED, None
        try:
            entry = self.ledger.append(
                transaction_id,
                counterparty_id,
                ONBOARD_INVESTOR,
                "SUCCESS",
                payload={
                    "manual_review_required": manual_review,
                    "reliance_status": state.status.value,
                    "bank_status": kyc_status,
                    "screening_status": screening_status,
                    "warrantyToken": warranty_token,
                },
                fund_id=fund_id or self.fund_id,
            )
            ledger_hash = entry.hash
        except LedgerWriteError:
            # logged CRITICAL by the ledger; the evidence is already stored
            audit = AUDIT_DEGRADED

        if self.queue is not None:
            self.queue.notify(build_verified_event(
                reference_id=transaction_id,
                fund_id=fund_id or self.fund_id,
                kyc_status=kyc_status,
                reliance_provider=counterparty_id,
                manual_review_required=manual_review,
                timestamp=self._clock(),
            ))

        event_log.onboarding_accepted(transaction_id, counterparty_id, state.status.value, manual_review)
        return OnboardingResult(
            transaction_id=transaction_id,
            status=VERIFIED_AND_SECURED,
            shard_b=sealed.shard_b.hex(),
            reliance_status=state.status.value,
            manual_review_required=manual_review,
            audit=audit,
            ledger_hash=ledger_hash,
        )

    def reconstruct(self, transaction_id: str, shard_b_hex: str, admin_id: str) -> Any:
        """
        Dual-custody decryption: stored shard A joined with the presented
        shard B. Plaintext is released only once the attempt is ledgered.
        """
        record = self.evidence.get(transaction_id)
        try:
            plaintext = vault.reconstruct_hex(record, shard_b_hex)
        except DecryptionError as e:
            event_log.security_event("EVIDENCE_RECONSTRUCT_FAILED", "high", transaction_id=transaction_id)
            try:
                self.ledger.append(
                    transaction_id, record["counterparty_id"], EVIDENCE_RECONSTRUCT_FAILED, "FAILURE",
                    payload={"reason": e.message}, admin_id=admin_id,
                )
            except LedgerWriteError:
                logger.error("Failed reconstruction of %s could not be ledgered", transaction_id)
            raise

        self.ledger.append(
            transaction_id, record["counterparty_id"], EVIDENCE_RECONSTRUCTED, "SUCCESS",
            admin_id=admin_id,
        )
        return plaintext


def ledger_transitions(ledger: AuditLedger, counterparty_id: str) -> Callable[[Transition], None]:
    """Listener that records every trust-state transition in the ledger."""

    def record(transition: Transition) -> None:
        action = RELIANCE_MANUAL_RESET if transition.manual else RELIANCE_STATE_CHANGE
        ledger.append(
            f"reliance-{int(transition.at * 1000)}",
            counterparty_id,
            action,
            transition.current.value,
            payload={
                "previous_state": transition.previous.value,
                "state": transition.current.value,
                "reason": transition.reason,
            },
            admin_id=transition.actor,
        )

    return record
