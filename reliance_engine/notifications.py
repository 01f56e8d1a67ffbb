"""
Durable, signed, at-least-once delivery of verified-event notifications.

Flow:
    notify() makes a first delivery attempt on the worker pool and returns
    immediately. A failed attempt goes to enqueue_for_delivery(), which
    writes the event to the WAL *before* scheduling it in Redis. The drain
    job (process_due) retries due events on the fixed RETRY_DELAYS steps;
    after MAX_RETRIES failed retries the event is dead-lettered.

Redis layout:
    retry_queue:webhooks    zset  event_id -> next attempt (epoch seconds)
    retry_event:<id>        str   OutboundEvent JSON
    dead_letter:webhooks    list  dead-lettered event JSON
    lock:webhook:<id>       str   per-event delivery lock (SET NX PX)
"""

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

import redis
import requests

from .errors import QueueUnavailable, RelianceError, WalWriteError
from .logging_config import event_log
from .util import canonicalize, generate_id, hmac_sha256_hex, now_epoch, utc_rfc3339
from .wal import OutboundEvent, WriteAheadLog

logger = logging.getLogger(__name__)

RETRY_DELAYS = (30, 120, 600, 1800, 7200)
MAX_RETRIES = 5

SIGNATURE_HEADER = "X-Reliance-Signature"
EVENT_TYPE_VERIFIED = "INVESTOR_VERIFIED"

RETRY_QUEUE_KEY = "retry_queue:webhooks"
DEAD_LETTER_KEY = "dead_letter:webhooks"
EVENT_KEY = "retry_event:{}"
LOCK_KEY = "lock:webhook:{}"

DELIVERED = "DELIVERED"
RETRY = "RETRY"
DEAD_LETTERED = "DEAD_LETTER"
LOCKED = "LOCKED"
SKIPPED = "SKIPPED"


def sign_payload(payload: Dict[str, Any], secret: str) -> str:
    """HMAC-SHA256 over the canonical JSON. Same payload, same signature."""
    return hmac_sha256_hex(secret, canonicalize(payload))


def build_verified_event(
    reference_id: str,
    fund_id: str,
    kyc_status: str,
    reliance_provider: str,
    manual_review_required: bool,
    timestamp: Optional[float] = None,
) -> Dict[str, Any]:
    """Notification body. Carries references only, never profile data."""
    return {
        "event_id": f"evt_{generate_id(12)}",
        "event_type": EVENT_TYPE_VERIFIED,
        "timestamp": utc_rfc3339(timestamp if timestamp is not None else now_epoch()),
        "fund_id": fund_id,
        "investor_profile": {
            "reference_id": reference_id,
            "kyc_status": kyc_status,
            "reliance_provider": reliance_provider,
        },
        "manual_review_required": manual_review_required,
    }


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    status_code: Optional[int] = None
    reason: str = ""


class WebhookSender:
    """Signed POST of canonical JSON to the administrator's ingest endpoint."""

    def __init__(self, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self._session = session or requests.Session()

    def send(self, destination: str, payload: Dict[str, Any], signature: str) -> DeliveryResult:
        try:
            resp = self._session.post(
                destination,
                data=canonicalize(payload),
                headers={"Content-Type": "application/json", SIGNATURE_HEADER: signature},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            return DeliveryResult(False, None, f"{e.__class__.__name__}: {e}")
        if 200 <= resp.status_code < 300:
            return DeliveryResult(True, resp.status_code)
        return DeliveryResult(False, resp.status_code, f"HTTP {resp.status_code}")

    def close(self) -> None:
        self._session.close()


class NotificationQueue:
    """
    Retry queue over the shared Redis store with a local WAL.

    Different events are delivered concurrently by the worker pool;
    attempts on the same event are serialized by a Redis lock so that
    several engine instances can drain one queue.
    """

    def __init__(
        self,
        client: redis.Redis,
        wal: WriteAheadLog,
        sender: WebhookSender,
        secret: str,
        destination: str,
        workers: int = 4,
        clock: Callable[[], float] = now_epoch,
        lock_ttl_ms: int = 60000,
    ):
        self._redis = client
        self._wal = wal
        self._sender = sender
        self._secret = secret
        self.destination = destination
        self._clock = clock
        self._lock_ttl_ms = lock_ttl_ms
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify")

    # ---- producer side ---------------------------------------------------

    def notify(self, payload: Dict[str, Any], destination: Optional[str] = None) -> Future:
        """Fire-and-forget first attempt. The future resolves to True when delivered."""
        destination = destination or self.destination
        event_id = payload.get("event_id") or f"evt_{generate_id(12)}"
        signature = sign_payload(payload, self._secret)
        future = self._executor.submit(self._first_attempt, event_id, payload, destination, signature)
        future.add_done_callback(lambda f: self._log_unexpected_failure(event_id, f))
        return future

    @staticmethod
    def _log_unexpected_failure(event_id: str, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Notification %s failed unexpectedly", event_id, exc_info=exc)

    def _first_attempt(self, event_id: str, payload: Dict[str, Any], destination: str, signature: str) -> bool:
        result = self._sender.send(destination, payload, signature)
        if result.ok:
            logger.info("Delivered %s to %s", event_id, destination)
            return True
        event_log.delivery_failed(event_id, 0, result.reason)
        try:
            self.enqueue_for_delivery(event_id, payload, destination, signature)
        except WalWriteError:
            # already logged CRITICAL by the WAL
            logger.error("Event %s was not accepted for retry", event_id)
        return False

    def enqueue_for_delivery(
        self,
        event_id: str,
        payload: Dict[str, Any],
        destination: str,
        signature: str,
    ) -> OutboundEvent:
        """
        Accept an event for retried delivery.

        The WAL write completes before the event is scheduled. If Redis is
        down after that, the event is still durable and ``recover`` will
        schedule it.

        Raises:
            WalWriteError: the event could not be persisted and is not accepted.
        """
        now = self._clock()
        event = OutboundEvent(
            event_id=event_id,
            destination=destination,
            payload=payload,
            signature=signature,
            enqueued_at=now,
            retry_count=0,
            next_attempt_at=now + RETRY_DELAYS[0],
        )
        self._wal.record_enqueued(event)
        try:
            self._schedule(event)
        except redis.RedisError as e:
            logger.error("Event %s persisted but not scheduled (%s); it will be recovered from the WAL", event_id, e)
        return event

    def _schedule(self, event: OutboundEvent, only_new: bool = False) -> None:
        pipe = self._redis.pipeline()
        pipe.set(EVENT_KEY.format(event.event_id), json.dumps(event.to_dict()), nx=only_new)
        pipe.zadd(RETRY_QUEUE_KEY, {event.event_id: event.next_attempt_at}, nx=only_new)
        pipe.execute()

    # ---- consumer side ---------------------------------------------------

    def process_due(self, limit: int = 100) -> Dict[str, int]:
        """
        Attempt every event whose next attempt time has passed.

        Returns:
            Count of attempts per outcome.
        """
        try:
            due = self._redis.zrangebyscore(RETRY_QUEUE_KEY, "-inf", self._clock(), start=0, num=limit)
        except redis.RedisError as e:
            logger.error("Retry queue unavailable: %s", e)
            return {}

        outcomes: Dict[str, int] = {}
        futures = [self._executor.submit(self.attempt, event_id) for event_id in due]
        for future in futures:
            try:
                outcome = future.result()
            except RelianceError as e:
                logger.error("Delivery bookkeeping failed: %s", e.message)
                outcome = SKIPPED
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
        return outcomes

    def attempt(self, event_id: str) -> str:
        """One serialized delivery attempt for ``event_id``."""
        lock_key = LOCK_KEY.format(event_id)
        token = generate_id(8)
        try:
            if not self._redis.set(lock_key, token, nx=True, px=self._lock_ttl_ms):
                logger.debug("Event %s is being delivered elsewhere", event_id)
                return LOCKED
        except redis.RedisError as e:
            logger.warning("Cannot lock event %s: %s", event_id, e)
            return SKIPPED

        try:
            return self._attempt_locked(event_id)
        except redis.RedisError as e:
            logger.warning("Retry queue unavailable while attempting %s: %s", event_id, e)
            return SKIPPED
        finally:
            self._release_lock(lock_key, token)

    def _attempt_locked(self, event_id: str) -> str:
        raw = self._redis.get(EVENT_KEY.format(event_id))
        if raw is None:
            self._redis.zrem(RETRY_QUEUE_KEY, event_id)
            return SKIPPED
        event = OutboundEvent.from_dict(json.loads(raw))
        now = self._clock()
        if event.next_attempt_at > now:
            # rescheduled by another worker since the due scan
            return SKIPPED

        result = self._sender.send(event.destination, event.payload, sign_payload(event.payload, self._secret))
        if result.ok:
            self._wal.record_delivered(event_id)
            pipe = self._redis.pipeline()
            pipe.delete(EVENT_KEY.format(event_id))
            pipe.zrem(RETRY_QUEUE_KEY, event_id)
            pipe.execute()
            logger.info("Delivered %s after %d retries", event_id, event.retry_count + 1)
            return DELIVERED

        retry_count = event.retry_count + 1
        event_log.delivery_failed(event_id, retry_count, result.reason)
        if retry_count >= MAX_RETRIES:
            self._dead_letter(replace(event, retry_count=retry_count, status=DEAD_LETTERED), result.reason)
            return DEAD_LETTERED

        updated = replace(event, retry_count=retry_count, next_attempt_at=now + RETRY_DELAYS[retry_count], status=RETRY)
        self._wal.record_retry_failed(updated, result.reason)
        self._schedule(updated)
        return RETRY

    def _dead_letter(self, event: OutboundEvent, reason: str) -> None:
        self._wal.record_dead_letter(event, reason)
        record = {**event.to_dict(), "last_error": reason, "dead_lettered_at": utc_rfc3339(self._clock())}
        pipe = self._redis.pipeline()
        pipe.rpush(DEAD_LETTER_KEY, json.dumps(record))
        pipe.delete(EVENT_KEY.format(event.event_id))
        pipe.zrem(RETRY_QUEUE_KEY, event.event_id)
        pipe.execute()
        reference_id = event.payload.get("investor_profile", {}).get("reference_id")
        event_log.dead_lettered(event.event_id, event.retry_count, reference_id)

    def _release_lock(self, lock_key: str, token: str) -> None:
        """Delete the lock only if we still own it."""
        try:
            with self._redis.pipeline() as pipe:
                pipe.watch(lock_key)
                if pipe.get(lock_key) == token:
                    pipe.multi()
                    pipe.delete(lock_key)
                    pipe.execute()
                else:
                    pipe.unwatch()
        except redis.WatchError:
            logger.debug("Lock %s changed hands before release", lock_key)
        except redis.RedisError as e:
            logger.warning("Could not release %s; it expires in %dms: %s", lock_key, self._lock_ttl_ms, e)

    # ---- operations ------------------------------------------------------

    def recover(self) -> int:
        """
        Re-schedule every pending WAL event. Events already in Redis keep
        their current schedule.

        Raises:
            QueueUnavailable: Redis could not be reached.
        """
        events = self._wal.replay()
        try:
            for event in events:
                self._schedule(event, only_new=True)
        except redis.RedisError as e:
            raise QueueUnavailable(f"cannot recover pending notifications: {e}") from e
        if events:
            logger.info("Recovered %d pending notifications from the WAL", len(events))
        return len(events)

    def checkpoint(self) -> int:
        return self._wal.checkpoint()

    def dead_letters(self) -> List[Dict[str, Any]]:
        try:
            return [json.loads(item) for item in self._redis.lrange(DEAD_LETTER_KEY, 0, -1)]
        except redis.RedisError as e:
            raise QueueUnavailable() from e

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self._sender.close()
