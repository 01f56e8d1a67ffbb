import json, os, sys
import pytest
import fakeredis
import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

# tools/ scripts are imported by path from the project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reliance_engine.db import Database, EvidenceStore
from reliance_engine.keys import TrustStore, generate_keypair
from reliance_engine.ledger import AuditLedger
from reliance_engine.log_backends import JsonlLedgerSink
from reliance_engine.revocation import RevocationRegistry

COUNTERPARTY_ID = "BANK-001"
KID = "counterparty-01"


class FakeClock:
    """Injectable clock; doubles as the monitor's sleep."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def revocations(redis_client):
    return RevocationRegistry(redis_client)


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "reliance.db")
    database.init_db()
    yield database
    database.close_connection()


@pytest.fixture
def evidence(db):
    return EvidenceStore(db)


@pytest.fixture
def ledger_path(tmp_path):
    return tmp_path / "audit_ledger.jsonl"


@pytest.fixture
def ledger(ledger_path, clock):
    return AuditLedger(JsonlLedgerSink(ledger_path), clock=clock)


@pytest.fixture
def counterparty_key(tmp_path):
    """(private_key_b64, TrustStore) for the demo counterparty."""
    private_b64, public_b64 = generate_keypair()
    path = tmp_path / "trust_store.json"
    with open(path, "w", encoding="utf-8") as f:
        json.dump({
            "trust_store_id": "test-trust-store",
            "counterparty_keys": {
                KID: {"counterparty_id": COUNTERPARTY_ID, "public_key_b64": public_b64}
            }
        }, f)
    return private_b64, TrustStore(str(path))


class ScriptedAdapter(BaseAdapter):
    """
    Transport adapter that answers from a handler instead of the network.
    The handler gets the PreparedRequest and returns (status, json_body) or
    raises a requests exception.
    """

    def __init__(self, handler):
        super().__init__()
        self.handler = handler
        self.requests = []

    def send(self, request, **kwargs):
        self.requests.append(request)
        status, body = self.handler(request)
        resp = requests.Response()
        resp.status_code = status
        resp._content = b"" if body is None else json.dumps(body).encode("utf-8")
        resp.headers = CaseInsensitiveDict({"Content-Type": "application/json"})
        resp.encoding = "utf-8"
        resp.url = request.url
        resp.request = request
        return resp

    def close(self):
        pass


def mock_session(handler):
    """requests.Session whose http and https traffic goes to ``handler``."""
    session = requests.Session()
    adapter = ScriptedAdapter(handler)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def read_jsonl(path):
    with open(path, "r", encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


class SwitchableProbe:
    def __init__(self):
        from reliance_engine.liveness import ProbeResult
        self.ok = ProbeResult(True, "ACCESS_CONFIRMED")
        self.fail = ProbeResult(False, "timeout")
        self.healthy = True

    def __call__(self):
        return self.ok if self.healthy else self.fail


@pytest.fixture
def engine(db, evidence, ledger, revocations, redis_client, clock, tmp_path):
    """Fully wired engine over tmp files, fakeredis and a mock admin endpoint."""
    from types import SimpleNamespace
    from reliance_engine.liveness import LivenessMonitor
    from reliance_engine.notifications import NotificationQueue, WebhookSender
    from reliance_engine.orchestrator import OnboardingOrchestrator, ledger_transitions
    from reliance_engine.wal import WriteAheadLog

    delivered = []

    def admin_ingest(request):
        delivered.append(json.loads(request.body))
        return 200, {"ok": True}

    probe = SwitchableProbe()
    monitor = LivenessMonitor(COUNTERPARTY_ID, probe, 4 * 60 * 60, clock=clock, sleep=clock.sleep)
    monitor.add_listener(ledger_transitions(ledger, COUNTERPARTY_ID))
    queue = NotificationQueue(
        redis_client,
        WriteAheadLog(tmp_path / "outbox.wal", retry_backoff_seconds=0),
        WebhookSender(session=mock_session(admin_ingest)),
        "test-webhook-secret",
        "http://admin.test/v1/admin-ingest",
        workers=2,
        clock=clock,
    )
    orchestrator = OnboardingOrchestrator(monitor, revocations, evidence, ledger, queue, fund_id="FUND_DEMO_01", clock=clock)
    yield SimpleNamespace(
        db=db, ledger=ledger, evidence=evidence, revocations=revocations, monitor=monitor,
        probe=probe, queue=queue, orchestrator=orchestrator, delivered=delivered, clock=clock,
    )
    queue.shutdown()


def onboard_payload(transaction_id="tx-0001", token="wt-0001"):
    return {
        "header": {"timestamp": "2024-05-01T10:00:00Z", "bank_id": COUNTERPARTY_ID, "transaction_id": transaction_id},
        "investor_profile": {
            "Nm": {"FrstNm": "Jane", "Srnm": "Doe"},
            "PstlAdr": {"Ctry": "IE", "TwnNm": "Dublin"},
            "TaxRes": [{"Ctry": "IE", "Id": "1234567T"}],
            "DtOfBirth": "1980-01-01",
            "Ntnlty": "IE",
        },
        "compliance_warranty": {"kyc_status": "VERIFIED", "screening_status": "CLEAR", "warranty_token": token},
    }
