"""
Liveness Monitor / Kill Switch Test Suite

Critical invariant tested:
    RELIANCE IS WITHDRAWN WHEN PROOF OF KEY CONTROL STOPS
"""

import json
import threading
import unittest

import pytest
import requests

from reliance_engine.keys import sign_ed25519
from reliance_engine.liveness import (
    ACCESS_CONFIRMED,
    CounterpartyProbe,
    LivenessMonitor,
    ProbeResult,
    TrustStatus,
    proof_payload,
)
from reliance_engine.orchestrator import RELIANCE_MANUAL_RESET, RELIANCE_STATE_CHANGE, ledger_transitions

from conftest import COUNTERPARTY_ID, KID, FakeClock, mock_session

GRACE = 4 * 60 * 60


class ScriptedProbe:
    """Returns queued results, then repeats the last one."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


OK = ProbeResult(True, ACCESS_CONFIRMED)
FAIL = ProbeResult(False, "timeout")


class TestKillSwitch(unittest.TestCase):
    """State machine driven with a fake clock and sleep."""

    def setUp(self):
        self.clock = FakeClock()
        self.transitions = []

    def _monitor(self, probe):
        monitor = LivenessMonitor(
            COUNTERPARTY_ID, probe, GRACE,
            max_attempts=3, retry_delay_seconds=10,
            clock=self.clock, sleep=self.clock.sleep,
        )
        monitor.add_listener(self.transitions.append)
        return monitor

    def test_starts_active(self):
        state = self._monitor(ScriptedProbe(OK)).current_state()
        self.assertEqual(state.status, TrustStatus.ACTIVE)
        self.assertIsNone(state.first_failure_at)

    def test_three_failures_enter_warning(self):
        probe = ScriptedProbe(FAIL)
        monitor = self._monitor(probe)
        started = self.clock.now

        state = monitor.run_probe_cycle()

        self.assertEqual(probe.calls, 3)
        self.assertEqual(self.clock.sleeps, [10, 10])
        self.assertEqual(state.status, TrustStatus.WARNING)
        self.assertEqual(state.first_failure_at, started)
        self.assertEqual([(t.previous, t.current) for t in self.transitions],
                         [(TrustStatus.ACTIVE, TrustStatus.WARNING)])

    def test_retry_success_stays_active(self):
        probe = ScriptedProbe(FAIL, OK)
        monitor = self._monitor(probe)

        state = monitor.run_probe_cycle()

        self.assertEqual(probe.calls, 2)
        self.assertEqual(state.status, TrustStatus.ACTIVE)
        self.assertIsNone(state.first_failure_at)
        self.assertEqual(self.transitions, [])

    def test_success_while_warning_resets(self):
        probe = ScriptedProbe(FAIL, FAIL, FAIL, OK)
        monitor = self._monitor(probe)
        monitor.run_probe_cycle()
        self.clock.advance(GRACE - 60)

        state = monitor.run_probe_cycle()

        self.assertEqual(state.status, TrustStatus.ACTIVE)
        self.assertIsNone(state.first_failure_at)

    def test_failure_episode_keeps_first_timestamp(self):
        monitor = self._monitor(ScriptedProbe(FAIL))
        first = monitor.run_probe_cycle().first_failure_at
        self.clock.advance(60)
        self.assertEqual(monitor.run_probe_cycle().first_failure_at, first)
        self.assertEqual(len(self.transitions), 1)

    def test_grace_period_not_yet_exceeded(self):
        monitor = self._monitor(ScriptedProbe(FAIL))
        monitor.run_probe_cycle()
        self.clock.advance(GRACE - 1 - 20)
        self.assertEqual(monitor.check_grace_period().status, TrustStatus.WARNING)

    def test_grace_expiry_suspends(self):
        monitor = self._monitor(ScriptedProbe(FAIL))
        monitor.run_probe_cycle()
        self.clock.advance(GRACE + 1)

        state = monitor.check_grace_period()

        self.assertEqual(state.status, TrustStatus.SUSPENDED)
        self.assertEqual(self.transitions[-1].current, TrustStatus.SUSPENDED)

    def test_grace_check_is_noop_while_active(self):
        monitor = self._monitor(ScriptedProbe(OK))
        self.clock.advance(GRACE * 10)
        self.assertEqual(monitor.check_grace_period().status, TrustStatus.ACTIVE)

    def test_suspended_needs_manual_reset(self):
        probe = ScriptedProbe(FAIL, FAIL, FAIL, OK)
        monitor = self._monitor(probe)
        monitor.run_probe_cycle()
        self.clock.advance(GRACE + 1)
        monitor.check_grace_period()

        # proof is back, but suspension is sticky
        self.assertEqual(monitor.run_probe_cycle().status, TrustStatus.SUSPENDED)
        self.assertEqual(monitor.on_scheduled_tick(), True)
        self.assertEqual(monitor.current_state().status, TrustStatus.SUSPENDED)

        state = monitor.reset("ops@fund-admin")
        self.assertEqual(state.status, TrustStatus.ACTIVE)
        self.assertIsNone(state.first_failure_at)
        last = self.transitions[-1]
        self.assertTrue(last.manual)
        self.assertEqual(last.actor, "ops@fund-admin")

    def test_force_state(self):
        monitor = self._monitor(ScriptedProbe(OK))
        state = monitor.force_state(TrustStatus.WARNING)
        self.assertEqual(state.status, TrustStatus.WARNING)
        self.assertEqual(state.first_failure_at, self.clock.now)

    def test_probe_exception_counts_as_failure(self):
        def broken():
            raise RuntimeError("socket exploded")

        monitor = self._monitor(broken)
        self.assertEqual(monitor.run_probe_cycle().status, TrustStatus.WARNING)

    def test_failing_listener_does_not_break_monitor(self):
        monitor = self._monitor(ScriptedProbe(FAIL))

        def bad_listener(transition):
            raise RuntimeError("ledger down")

        monitor.add_listener(bad_listener)
        self.assertEqual(monitor.run_probe_cycle().status, TrustStatus.WARNING)
        self.assertEqual(len(self.transitions), 1)


def test_overlapping_tick_is_skipped():
    entered = threading.Event()
    release = threading.Event()
    calls = []

    def slow_probe():
        calls.append(1)
        entered.set()
        release.wait(5)
        return OK

    monitor = LivenessMonitor(COUNTERPARTY_ID, slow_probe, GRACE, sleep=lambda s: None)
    worker = threading.Thread(target=monitor.on_scheduled_tick)
    worker.start()
    assert entered.wait(5)

    assert monitor.on_scheduled_tick() is False
    release.set()
    worker.join(5)

    assert len(calls) == 1
    assert monitor.on_scheduled_tick() is True
    assert len(calls) == 2


def test_stop_abandons_cycle_without_escalating():
    monitor = LivenessMonitor(COUNTERPARTY_ID, ScriptedProbe(FAIL), GRACE, retry_delay_seconds=10)
    monitor.stop()
    state = monitor.run_probe_cycle()
    assert state.status is TrustStatus.ACTIVE


def test_transitions_are_ledgered(ledger):
    clock = FakeClock()
    monitor = LivenessMonitor(COUNTERPARTY_ID, ScriptedProbe(FAIL), GRACE, clock=clock, sleep=clock.sleep)
    monitor.add_listener(ledger_transitions(ledger, COUNTERPARTY_ID))

    monitor.run_probe_cycle()
    clock.advance(GRACE + 1)
    monitor.check_grace_period()
    monitor.reset("ops")

    entries = ledger.entries()
    assert [(e["action"], e["status"]) for e in entries] == [
        (RELIANCE_STATE_CHANGE, "WARNING"),
        (RELIANCE_STATE_CHANGE, "SUSPENDED"),
        (RELIANCE_MANUAL_RESET, "ACTIVE"),
    ]
    assert entries[2]["admin_id"] == "ops"
    assert entries[1]["data"]["previous_state"] == "WARNING"
    assert ledger.verify() == (True, [])


# ---- signed challenge-response probe ---------------------------------------

def responder(private_b64, **overrides):
    def handler(request):
        challenge = json.loads(request.body)["challenge"]
        answer = {
            "status": ACCESS_CONFIRMED,
            "challenge": challenge,
            "counterparty_id": COUNTERPARTY_ID,
            "kid": KID,
            "signature_b64": sign_ed25519(proof_payload(challenge, COUNTERPARTY_ID), private_b64),
        }
        answer.update(overrides)
        return 200, answer

    return handler


def make_probe(trust_store, handler):
    return CounterpartyProbe(
        "https://bank.test/v1/heartbeat-response", COUNTERPARTY_ID, KID, trust_store,
        timeout=1.0, session=mock_session(handler),
    )


def test_probe_accepts_valid_signed_proof(counterparty_key):
    private_b64, trust_store = counterparty_key
    result = make_probe(trust_store, responder(private_b64))()
    assert result == ProbeResult(True, ACCESS_CONFIRMED)


def test_probe_rejects_signature_from_other_key(counterparty_key):
    from reliance_engine.keys import generate_keypair

    _, trust_store = counterparty_key
    impostor, _ = generate_keypair()
    result = make_probe(trust_store, responder(impostor))()
    assert not result.ok
    assert result.reason == "invalid proof signature"


@pytest.mark.parametrize("overrides, reason", [
    ({"status": "UP"}, "access not confirmed"),
    ({"challenge": "00" * 32}, "challenge mismatch"),
    ({"kid": "unknown-kid"}, "unknown key unknown-kid"),
])
def test_probe_rejects_bad_answers(counterparty_key, overrides, reason):
    private_b64, trust_store = counterparty_key
    result = make_probe(trust_store, responder(private_b64, **overrides))()
    assert result == ProbeResult(False, reason)


def test_probe_http_error_and_timeout(counterparty_key):
    _, trust_store = counterparty_key

    result = make_probe(trust_store, lambda request: (500, None))()
    assert result == ProbeResult(False, "unexpected HTTP 500")

    def timeout(request):
        raise requests.ConnectTimeout("timed out", request=request)

    assert make_probe(trust_store, timeout)() == ProbeResult(False, "timeout")

    def refused(request):
        raise requests.ConnectionError("refused", request=request)

    assert make_probe(trust_store, refused)().reason == "connection error: ConnectionError"


def test_probe_drives_monitor_end_to_end(counterparty_key):
    _, trust_store = counterparty_key
    clock = FakeClock()
    probe = make_probe(trust_store, lambda request: (503, None))
    monitor = LivenessMonitor(COUNTERPARTY_ID, probe, GRACE, clock=clock, sleep=clock.sleep)
    assert monitor.run_probe_cycle().status is TrustStatus.WARNING
