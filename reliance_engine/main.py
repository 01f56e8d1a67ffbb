import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request

from . import __version__, config
from .config import is_debug, is_production, validate_config, webhook_secret
from .db import Database, EvidenceStore
from .errors import QueueUnavailable, RelianceError
from .keys import TrustStore
from .ledger import AuditLedger, verify_chain
from .liveness import CounterpartyProbe, LivenessMonitor, TrustStatus
from .log_backends import get_ledger_sink
from .logging_config import configure_logging, set_request_id
from .models import OnboardRequest, ReconstructRequest, ResetRequest, RevokeRequest
from .notifications import NotificationQueue, WebhookSender
from .orchestrator import OnboardingOrchestrator, ledger_transitions
from .revocation import RevocationRegistry, get_redis
from .scheduler import RelianceScheduler
from .security import ValidationError, bearer_token, token_matches, validate_shard_hex
from .wal import WriteAheadLog

logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: Database
    ledger: AuditLedger
    evidence: EvidenceStore
    revocations: RevocationRegistry
    monitor: LivenessMonitor
    queue: Optional[NotificationQueue]
    orchestrator: OnboardingOrchestrator
    scheduler: Optional[RelianceScheduler] = None


def build_services() -> Services:
    """Wire the engine from config."""
    db = Database(config.EVIDENCE_DB_PATH)
    ledger = AuditLedger(get_ledger_sink(db))
    evidence = EvidenceStore(db)
    redis_client = get_redis()
    revocations = RevocationRegistry(redis_client)

    probe = CounterpartyProbe(
        url=config.COUNTERPARTY_LIVENESS_URL,
        counterparty_id=config.COUNTERPARTY_ID,
        kid=config.COUNTERPARTY_KID,
        trust_store=TrustStore(config.TRUST_STORE_PATH),
        timeout=config.LIVENESS_TIMEOUT_SECONDS,
        verify_tls=config.COUNTERPARTY_VERIFY_TLS,
    )
    monitor = LivenessMonitor(
        config.COUNTERPARTY_ID,
        probe,
        grace_period_seconds=config.GRACE_PERIOD_SECONDS,
        max_attempts=config.LIVENESS_MAX_ATTEMPTS,
        retry_delay_seconds=config.LIVENESS_RETRY_DELAY_SECONDS,
    )
    monitor.add_listener(ledger_transitions(ledger, config.COUNTERPARTY_ID))

    queue = NotificationQueue(
        redis_client,
        WriteAheadLog(config.WAL_PATH),
        WebhookSender(timeout=config.WEBHOOK_TIMEOUT_SECONDS),
        secret=webhook_secret(),
        destination=config.ADMIN_WEBHOOK_URL,
        workers=config.QUEUE_WORKERS,
    )
    orchestrator = OnboardingOrchestrator(monitor, revocations, evidence, ledger, queue, fund_id=config.FUND_ID)
    return Services(db, ledger, evidence, revocations, monitor, queue, orchestrator)


def _require_token(authorization: Optional[str], expected: str) -> None:
    if not expected:
        raise HTTPException(500, "AUTH_NOT_CONFIGURED")
    if not token_matches(bearer_token(authorization), expected):
        raise HTTPException(401, "UNAUTHORIZED")


def require_api_token(authorization: Optional[str] = Header(None)) -> None:
    _require_token(authorization, config.API_AUTH_TOKEN)


def require_admin(
    authorization: Optional[str] = Header(None),
    x_admin_id: Optional[str] = Header(None),
) -> str:
    """Admin routes; returns the acting administrator for the audit trail."""
    _require_token(authorization, config.ADMIN_AUTH_TOKEN)
    return x_admin_id or "admin"


def _http_error(e: RelianceError) -> HTTPException:
    return HTTPException(e.status_code, e.reason)


def create_app(services: Optional[Services] = None, background: bool = True) -> FastAPI:
    """
    Build the API. Tests pass prebuilt ``services`` and ``background=False``;
    the server builds everything from config at startup.
    """
    app = FastAPI(
        title="Reliance Engine",
        version=__version__,
        docs_url=None if is_production() else "/docs",
        redoc_url=None,
    )
    app.state.services = services

    def svc() -> Services:
        if app.state.services is None:
            raise HTTPException(503, "NOT_READY")
        return app.state.services

    @app.middleware("http")
    async def _request_id(request: Request, call_next):
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.on_event("startup")
    def _startup():
        configure_logging(
            level="DEBUG" if is_debug() else config.LOG_LEVEL,
            json_format=config.LOG_JSON,
            log_file=config.LOG_FILE,
        )
        for name, present in validate_config().items():
            if not present:
                logger.warning("Configured %s is missing", name)

        if app.state.services is None:
            app.state.services = build_services()
        s = app.state.services
        s.db.init_db()
        if s.queue is not None:
            try:
                s.queue.recover()
            except QueueUnavailable as e:
                logger.error("Pending notifications not recovered at startup: %s", e.message)
        if background:
            s.scheduler = RelianceScheduler(
                s.monitor, s.queue,
                liveness_interval_seconds=config.LIVENESS_INTERVAL_SECONDS,
                queue_poll_seconds=config.QUEUE_POLL_SECONDS,
            )
            s.scheduler.start()
        logger.info("Reliance engine started (env=%s, ledger=%s)", config.ENV, config.LEDGER_BACKEND)

    @app.on_event("shutdown")
    def _shutdown():
        s = app.state.services
        if s is None:
            return
        if s.scheduler is not None:
            s.scheduler.shutdown()
        if s.queue is not None:
            s.queue.shutdown(wait=False)
        s.db.close_connection()

    @app.get("/health")
    def health():
        s = svc()
        state = s.monitor.current_state()
        ledger_ok = s.ledger.ensure_writable()
        store_ok = s.revocations.ping()
        return {
            "ok": state.status is TrustStatus.ACTIVE and ledger_ok and store_ok,
            "version": __version__,
            "reliance": state.to_dict(),
            "ledger": "OK" if ledger_ok else "DEGRADED",
            "shared_store": "OK" if store_ok else "UNREACHABLE",
        }

    @app.post("/v1/onboard-investor", status_code=201, dependencies=[Depends(require_api_token)])
    def onboard_investor(req: OnboardRequest):
        try:
            result = svc().orchestrator.onboard(
                transaction_id=req.header.transaction_id,
                counterparty_id=req.header.bank_id,
                investor_profile=req.investor_profile,
                warranty_token=req.compliance_warranty.warranty_token,
                kyc_status=req.compliance_warranty.kyc_status,
                screening_status=req.compliance_warranty.screening_status,
                fund_id=req.fund_id,
            )
        except RelianceError as e:
            raise _http_error(e) from e
        return result.to_dict()

    @app.post("/v1/revoke", dependencies=[Depends(require_api_token)])
    def revoke(req: RevokeRequest):
        try:
            total = svc().revocations.revoke(req.token)
        except RelianceError as e:
            raise _http_error(e) from e
        return {"message": "Token revoked", "total_revoked": total}

    @app.get("/v1/evidence/{transaction_id}", dependencies=[Depends(require_admin)])
    def get_evidence(transaction_id: str):
        try:
            return svc().evidence.describe(transaction_id)
        except RelianceError as e:
            raise _http_error(e) from e

    @app.post("/v1/evidence/{transaction_id}/reconstruct")
    def reconstruct_evidence(transaction_id: str, req: ReconstructRequest, admin_id: str = Depends(require_admin)):
        try:
            shard_b = validate_shard_hex(req.shard_b)
        except ValidationError as e:
            raise HTTPException(400, "INVALID_SHARD") from e
        try:
            record = svc().orchestrator.reconstruct(transaction_id, shard_b, admin_id)
        except RelianceError as e:
            raise _http_error(e) from e
        return {"transaction_id": transaction_id, "record": record}

    @app.get("/v1/ledger", dependencies=[Depends(require_admin)])
    def ledger_entries():
        return svc().ledger.entries()

    @app.get("/v1/ledger/verify", dependencies=[Depends(require_admin)])
    def ledger_verify():
        entries = svc().ledger.entries()
        valid, errors = verify_chain(entries)
        return {"valid": valid, "entries": len(entries), "errors": errors}

    @app.get("/v1/admin/reliance", dependencies=[Depends(require_admin)])
    def reliance_state():
        s = svc()
        return {"counterparty_id": s.monitor.counterparty_id, **s.monitor.current_state().to_dict()}

    @app.post("/v1/admin/reliance/reset")
    def reliance_reset(req: Optional[ResetRequest] = None, admin_id: str = Depends(require_admin)):
        s = svc()
        actor = (req.actor if req and req.actor else None) or admin_id
        previous = s.monitor.current_state()
        state = s.monitor.reset(actor)
        return {
            "counterparty_id": s.monitor.counterparty_id,
            "previous_status": previous.status.value,
            **state.to_dict(),
        }

    @app.get("/v1/admin/dead-letters", dependencies=[Depends(require_admin)])
    def dead_letters():
        s = svc()
        if s.queue is None:
            return {"count": 0, "events": []}
        try:
            events = s.queue.dead_letters()
        except RelianceError as e:
            raise _http_error(e) from e
        return {"count": len(events), "events": events}

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=config.BIND_HOST, port=config.PORT, log_config=None)


if __name__ == "__main__":
    main()
