"""
Liveness monitor and kill switch.

The counterparty must keep proving that it still controls its signing
material. The monitor probes it on a schedule and walks a one-way
escalation:

    ACTIVE -> WARNING -> SUSPENDED

A probe cycle makes up to ``max_attempts`` attempts ``retry_delay``
seconds apart. Any success ends the cycle and returns WARNING to ACTIVE.
If every attempt fails the state becomes WARNING and the time of the
first failure of the episode is kept. The grace check suspends reliance
once that failure is older than the grace period. SUSPENDED is only left
through an explicit administrative reset.

The monitor is the only writer of the trust state; request handlers only
read snapshots of it.
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests

from .keys import TrustStore, verify_ed25519
from .logging_config import event_log
from .util import canonicalize, utc_rfc3339

logger = logging.getLogger(__name__)

ACCESS_CONFIRMED = "ACCESS_CONFIRMED"


class TrustStatus(str, Enum):
    ACTIVE = "ACTIVE"
    WARNING = "WARNING"
    SUSPENDED = "SUSPENDED"


@dataclass(frozen=True)
class TrustState:
    """Immutable snapshot of the reliance status of one counterparty."""
    status: TrustStatus
    first_failure_at: Optional[float] = None
    changed_at: Optional[float] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "first_failure_at": utc_rfc3339(self.first_failure_at) if self.first_failure_at else None,
            "changed_at": utc_rfc3339(self.changed_at) if self.changed_at else None,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Transition:
    previous: TrustStatus
    current: TrustStatus
    reason: str
    at: float
    manual: bool = False
    actor: Optional[str] = None


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    reason: str = ""


def proof_payload(challenge: str, counterparty_id: str) -> bytes:
    """Bytes the counterparty signs to prove it still holds its key."""
    return canonicalize({
        "challenge": challenge,
        "counterparty_id": counterparty_id,
        "status": ACCESS_CONFIRMED,
    })


class CounterpartyProbe:
    """
    Signed challenge-response liveness check.

    A 2xx "process is up" answer is not enough: the counterparty must echo
    a fresh random challenge and sign it with a key registered for it in
    the trust store.
    """

    def __init__(
        self,
        url: str,
        counterparty_id: str,
        kid: str,
        trust_store: TrustStore,
        timeout: float = 29.0,
        verify_tls: bool = True,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.counterparty_id = counterparty_id
        self.kid = kid
        self.timeout = timeout
        self._trust_store = trust_store
        self._session = session or requests.Session()
        self._session.verify = verify_tls

    def close(self) -> None:
        self._session.close()

    def __call__(self) -> ProbeResult:
        challenge = secrets.token_hex(32)
        try:
            resp = self._session.post(
                self.url,
                json={"challenge": challenge, "counterparty_id": self.counterparty_id},
                timeout=self.timeout,
            )
        except requests.Timeout:
            return ProbeResult(False, "timeout")
        except requests.RequestException as e:
            return ProbeResult(False, f"connection error: {e.__class__.__name__}")

        if resp.status_code != 200:
            return ProbeResult(False, f"unexpected HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError:
            return ProbeResult(False, "invalid response format")
        if not isinstance(body, dict) or body.get("status") != ACCESS_CONFIRMED:
            return ProbeResult(False, "access not confirmed")
        if body.get("challenge") != challenge:
            return ProbeResult(False, "challenge mismatch")

        kid = body.get("kid") or self.kid
        try:
            public_key = self._trust_store.public_key(self.counterparty_id, kid)
        except (OSError, ValueError) as e:
            return ProbeResult(False, f"trust store unavailable: {e}")
        if not public_key:
            return ProbeResult(False, f"unknown key {kid}")
        if not verify_ed25519(body.get("signature_b64", ""), proof_payload(challenge, self.counterparty_id), public_key):
            return ProbeResult(False, "invalid proof signature")
        return ProbeResult(True, ACCESS_CONFIRMED)


class LivenessMonitor:
    """
    Owns the TrustState of one counterparty.

    ``probe`` is any callable returning a ProbeResult. ``clock`` and
    ``sleep`` are injectable so the escalation can be driven in tests
    without real waiting.
    """

    def __init__(
        self,
        counterparty_id: str,
        probe: Callable[[], ProbeResult],
        grace_period_seconds: float,
        max_attempts: int = 3,
        retry_delay_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.counterparty_id = counterparty_id
        self.grace_period_seconds = grace_period_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self._probe = probe
        self._clock = clock
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._state_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._state = TrustState(TrustStatus.ACTIVE, changed_at=clock(), reason="startup")
        self._listeners: List[Callable[[Transition], None]] = []

    # ---- public contract -------------------------------------------------

    def current_state(self) -> TrustState:
        with self._state_lock:
            return self._state

    def add_listener(self, listener: Callable[[Transition], None]) -> None:
        self._listeners.append(listener)

    def force_state(self, status: TrustStatus, reason: str = "forced", actor: Optional[str] = None) -> TrustState:
        """Administrative/test hook: set the state directly."""
        status = TrustStatus(status)
        now = self._clock()
        with self._state_lock:
            previous = self._state
            first_failure = previous.first_failure_at
            if status is TrustStatus.ACTIVE:
                first_failure = None
            elif first_failure is None:
                first_failure = now
            self._state = TrustState(status, first_failure, now, reason)
            current = self._state
        self._notify(previous.status, current.status, reason, now, manual=True, actor=actor)
        return current

    def reset(self, actor: str) -> TrustState:
        """Manual return to ACTIVE, the only way out of SUSPENDED."""
        logger.warning("Reliance manually reset by %s", actor)
        return self.force_state(TrustStatus.ACTIVE, reason=f"manual reset by {actor}", actor=actor)

    def on_scheduled_tick(self) -> bool:
        """
        Scheduled entry point. A tick that arrives while the previous cycle
        is still in flight only runs the grace check.

        Returns:
            True if a probe cycle ran.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Liveness cycle still in flight for %s; skipping probe", self.counterparty_id)
            self.check_grace_period()
            return False
        try:
            self.run_probe_cycle()
            self.check_grace_period()
        finally:
            self._cycle_lock.release()
        return True

    def stop(self) -> None:
        """Interrupt any inter-attempt wait."""
        self._stop.set()

    # ---- protocol --------------------------------------------------------

    def run_probe_cycle(self) -> TrustState:
        """Three-strike protocol: up to max_attempts probes, retry_delay apart."""
        first_failure_at: Optional[float] = None
        reason = ""
        for attempt in range(1, self.max_attempts + 1):
            result = self._probe_once()
            if result.ok:
                self._record_success()
                return self.current_state()

            if first_failure_at is None:
                first_failure_at = self._clock()
            reason = result.reason
            event_log.probe_failed(self.counterparty_id, attempt, self.max_attempts, reason)

            if attempt < self.max_attempts:
                self._sleep(self.retry_delay_seconds)
                if self._stop.is_set():
                    logger.info("Liveness monitor stopping; abandoning cycle")
                    return self.current_state()

        self._record_failure(first_failure_at, f"{self.max_attempts} consecutive probe failures: {reason}")
        return self.current_state()

    def check_grace_period(self) -> TrustState:
        """Suspend once a WARNING episode has outlived the grace period."""
        now = self._clock()
        with self._state_lock:
            previous = self._state
            if (
                previous.status is not TrustStatus.WARNING
                or previous.first_failure_at is None
                or now - previous.first_failure_at < self.grace_period_seconds
            ):
                return previous
            elapsed_hours = (now - previous.first_failure_at) / 3600
            reason = f"grace period exceeded after {elapsed_hours:.2f}h without proof of control"
            self._state = TrustState(TrustStatus.SUSPENDED, previous.first_failure_at, now, reason)
            current = self._state
        event_log.security_event("KILL_SWITCH_ACTIVATED", "critical", counterparty_id=self.counterparty_id)
        self._notify(previous.status, current.status, reason, now)
        return current

    # ---- internals -------------------------------------------------------

    def _probe_once(self) -> ProbeResult:
        try:
            return self._probe()
        except Exception as e:
            logger.exception("Liveness probe raised")
            return ProbeResult(False, f"probe error: {e}")

    def _record_success(self) -> None:
        now = self._clock()
        with self._state_lock:
            previous = self._state
            if previous.status is TrustStatus.SUSPENDED:
                logger.warning(
                    "Counterparty %s proved control again but reliance stays SUSPENDED until manual reset",
                    self.counterparty_id,
                )
                return
            if previous.status is TrustStatus.ACTIVE:
                return
            self._state = TrustState(TrustStatus.ACTIVE, None, now, "liveness proof restored")
            current = self._state
        self._notify(previous.status, current.status, current.reason, now)

    def _record_failure(self, first_failure_at: Optional[float], reason: str) -> None:
        now = self._clock()
        with self._state_lock:
            previous = self._state
            if previous.status is TrustStatus.SUSPENDED:
                return
            first = previous.first_failure_at or first_failure_at or now
            self._state = TrustState(TrustStatus.WARNING, first, now if previous.status is TrustStatus.ACTIVE else previous.changed_at, reason)
            current = self._state
        if previous.status is not current.status:
            self._notify(previous.status, current.status, reason, now)
        else:
            remaining = self.grace_period_seconds - (now - current.first_failure_at)
            logger.warning(
                "Liveness still failing for %s; %.0fs of grace period remaining",
                self.counterparty_id, max(0.0, remaining),
            )

    def _notify(
        self,
        previous: TrustStatus,
        current: TrustStatus,
        reason: str,
        at: float,
        manual: bool = False,
        actor: Optional[str] = None,
    ) -> None:
        if previous is current and not manual:
            return
        event_log.trust_state_changed(self.counterparty_id, previous.value, current.value, reason)
        transition = Transition(previous, current, reason, at, manual, actor)
        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception:
                logger.exception("Trust state listener failed")
