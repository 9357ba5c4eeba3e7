"""Shared fixtures: throwaway SQLite store, fake issuer, fake indexer, fake Redis."""

import json
import os
import tempfile
import time
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

TEST_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_key_dir = Path(tempfile.mkdtemp(prefix="cardfund-tests-"))
(_key_dir / "issuer.pem").write_bytes(
    TEST_KEY.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
)

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("ISSUER_PRIVATE_KEY_PATH", str(_key_dir / "issuer.pem"))
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "http://127.0.0.1:9/v1/traces")

import httpx
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from cardfund.common.db import Base
from cardfund.common.jobqueue import JobQueue
from cardfund.services.deposits.models import Account, Job
from cardfund.services.deposits.poller import LedgerPoller
from cardfund.services.issuer.client import IssuerClient


ISSUER_URL = "https://issuer.test"
INDEXER_URL = "https://indexer.test"


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'deposits.db'}")

    # pysqlite manages BEGIN itself and breaks SAVEPOINT; hand control to SQLAlchemy.
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def add_account(session_factory):
    def _add(account_id: str, address: str | None, issuer_user_id: str | None = "user-1") -> Account:
        with session_factory() as db:
            account = Account(account_id=account_id, address=address, issuer_user_id=issuer_user_id)
            db.add(account)
            db.commit()
            return account

    return _add


@pytest.fixture
def failed_hook_calls():
    return []


@pytest.fixture
def queue(session_factory, failed_hook_calls):
    def on_failed(db, job, reason):
        failed_hook_calls.append((job.id, job.job_type, reason))

    return JobQueue(session_factory, Job, service_name="test", on_failed=on_failed)


@pytest.fixture
def rsa_key():
    return TEST_KEY


class FakeIssuer:
    """In-memory issuer open API behind an httpx.MockTransport."""

    def __init__(self) -> None:
        self.applications: list[dict] = []
        self.topup_calls: list[dict] = []
        self.accepted: list[str] = []
        self.rejected: list[str] = []
        self.requests: list[httpx.Request] = []
        self.topup_code = 200
        self.list_status = 200
        self.accept_marks_status = True
        self.failing_rejects: set[str] = set()
        self.failing_accepts: set[str] = set()

    def add_application(self, app_id: str, amount, user_id: str = "user-1", status: int = 0, create_time=None):
        self.applications.append(
            {
                "id": app_id,
                "userId": user_id,
                "applyAmount": amount,
                "status": status,
                "createTime": create_time or int(time.time() * 1000),
            }
        )

    def _set_status(self, app_id: str, status: int) -> None:
        for application in self.applications:
            if application["id"] == app_id:
                application["status"] = status

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/open-api/wallet/topup":
            self.topup_calls.append(json.loads(request.content))
            msg = "ok" if self.topup_code == 200 else "insufficient balance"
            return httpx.Response(200, json={"code": self.topup_code, "msg": msg})
        if path == "/open-api/wallet/topup/applications":
            if self.list_status != 200:
                return httpx.Response(self.list_status)
            user_id = request.url.params["userId"]
            status = request.url.params.get("status")
            data = [
                a
                for a in self.applications
                if a["userId"] == user_id and (status is None or a["status"] == int(status))
            ]
            return httpx.Response(200, json={"code": 200, "msg": "ok", "data": data})
        if path.endswith("/accept"):
            app_id = path.split("/")[-2]
            if app_id in self.failing_accepts:
                return httpx.Response(502)
            self.accepted.append(app_id)
            if self.accept_marks_status:
                self._set_status(app_id, 1)
            return httpx.Response(200, json={"code": 200, "msg": "ok"})
        if path.endswith("/reject"):
            app_id = path.split("/")[-2]
            if app_id in self.failing_rejects:
                return httpx.Response(502)
            self.rejected.append(app_id)
            self._set_status(app_id, 2)
            return httpx.Response(200, json={"code": 200, "msg": "ok"})
        return httpx.Response(404)


@pytest.fixture
def fake_issuer():
    return FakeIssuer()


@pytest.fixture
def issuer_client(fake_issuer, rsa_key):
    return IssuerClient(
        base_url=ISSUER_URL,
        secret_key="issuer-secret",
        license_key="license-123",
        private_key=rsa_key,
        transport=httpx.MockTransport(fake_issuer.handler),
        service_name="test",
    )


def trc20_item(
    transaction_id: str,
    to_address: str,
    quant: str = "50000000",
    confirmed: bool = True,
    revert: bool = False,
    final_result: str = "SUCCESS",
    from_address: str = "TSenderAddress",
) -> dict:
    return {
        "transaction_id": transaction_id,
        "from_address": from_address,
        "to_address": to_address,
        "quant": quant,
        "block_ts": 1_760_000_000_000,
        "confirmed": confirmed,
        "revert": revert,
        "finalResult": final_result,
        "tokenInfo": {"tokenDecimal": 6},
    }


class FakeIndexer:
    """TronScan-style transfers endpoint keyed by `relatedAddress`."""

    def __init__(self) -> None:
        self.transfers: dict[str, list[dict]] = {}
        self.statuses: dict[str, int] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        address = request.url.params.get("relatedAddress")
        status = self.statuses.get(address, 200)
        if status != 200:
            return httpx.Response(status)
        return httpx.Response(200, json={"total": 0, "token_transfers": self.transfers.get(address, [])})


@pytest.fixture
def fake_indexer():
    return FakeIndexer()


@pytest.fixture
def poller(fake_indexer):
    return LedgerPoller(
        base_url=INDEXER_URL,
        api_key="indexer-key",
        transport=httpx.MockTransport(fake_indexer.handler),
        service_name="test",
    )


@pytest.fixture
def transfer_item():
    return trc20_item


class FakeRedis:
    """Just enough of redis-py for the rate-limit cooldown."""

    def __init__(self) -> None:
        self.expiry: dict[str, float] = {}

    def set(self, name, value, px=None):
        self.expiry[name] = time.monotonic() + (px or 0) / 1000
        return True

    def pttl(self, name):
        deadline = self.expiry.get(name)
        if deadline is None:
            return -2
        remaining = int((deadline - time.monotonic()) * 1000)
        return remaining if remaining > 0 else -2


@pytest.fixture
def fake_redis():
    return FakeRedis()


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def instant_sleep():
    return no_sleep
