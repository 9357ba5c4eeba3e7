"""Ops HTTP surface, maintenance switch, outbox and scheduler wiring."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from cardfund.common.jobqueue import JobOptions, JobOutcome
from cardfund.common.maintenance import MaintenanceState
from cardfund.common.outbox import add_outbox_event, claim_outbox_batch, mark_outbox_sent, requeue_outbox_event
from cardfund.services.deposits import main
from cardfund.services.deposits.models import Job, OutboxEvent
from cardfund.services.deposits.monitor import RECONCILE
from cardfund.services.deposits.planner import MONITOR_BATCH
from cardfund.services.deposits.poller import RateLimitCooldown
from cardfund.services.deposits.scheduler import (
    MONITOR_JOB_ID,
    SWEEP_JOB_ID,
    build_scheduler,
    run_monitor_cycle,
)
from cardfund.services.deposits.service import DepositService


API_KEY = {"X-API-KEY": "test-api-key"}


@pytest.fixture
def service(session_factory, issuer_client, poller, fake_redis):
    return DepositService(
        session_factory,
        issuer=issuer_client,
        poller=poller,
        cooldown=RateLimitCooldown(fake_redis),
        maintenance=MaintenanceState(),
        service_name="test",
    )


@pytest.fixture
def client(service, monkeypatch):
    monkeypatch.setattr(main, "service", service)
    return TestClient(main.app)


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_admin_routes_require_api_key(client):
    assert client.get("/admin/jobs/failed").status_code == 401
    assert client.get("/admin/maintenance", headers={"X-API-KEY": "wrong"}).status_code == 401


def test_failed_jobs_can_be_listed_and_retried(client, service):
    job_id = service.queue.enqueue(RECONCILE, {"external_transfer_id": "t1"}, JobOptions(attempts=1))
    job = service.queue.claim(RECONCILE)[0]
    service.queue.settle(job, JobOutcome.retry("NO_MATCH: nothing pending"))

    listed = client.get("/admin/jobs/failed", headers=API_KEY).json()
    assert [(j["job_id"], j["last_error"]) for j in listed] == [(job_id, "NO_MATCH: nothing pending")]

    resp = client.post(f"/admin/jobs/{job_id}/retry", headers=API_KEY)
    assert resp.json() == {"job_id": job_id, "status": "PENDING"}
    assert client.post(f"/admin/jobs/{job_id}/retry", headers=API_KEY).status_code == 409
    assert client.get("/admin/jobs/failed", headers=API_KEY).json() == []


def test_maintenance_blocks_public_routes_only(client):
    resp = client.post("/admin/maintenance", json={"enabled": True}, headers=API_KEY)
    assert resp.json() == {"enabled": True, "previous": False}

    assert client.post("/webhooks/issuer", json={"txnType": "UNKNOWN"}).status_code == 503
    assert client.get("/health").status_code == 200
    assert client.get("/admin/maintenance", headers=API_KEY).json() == {"enabled": True}

    client.post("/admin/maintenance", json={"enabled": False}, headers=API_KEY)
    assert client.post("/webhooks/issuer", json={"txnType": "UNKNOWN"}).status_code == 200


def test_webhook_is_staged_for_issuer_events(client, session_factory):
    body = {
        "txnType": "TOPUP",
        "userId": "user-1",
        "billNo": "bill-7",
        "cardId": "card-1",
        "amount": "20.00",
        "currency": "USD",
        "type": "INCREASE",
    }

    resp = client.post("/webhooks/issuer", json=body)

    assert resp.json() == {"ok": True, "kind": "TopupEvent"}
    with session_factory() as db:
        (event,) = db.execute(select(OutboxEvent)).scalars().all()
    assert (event.topic, event.aggregate_id) == ("issuer.events", "bill-7")
    assert event.payload["payload"]["body"] == body


def test_invalid_known_webhook_is_unprocessable(client):
    assert client.post("/webhooks/issuer", json={"txnType": "AUTH"}).status_code == 422
    assert client.post("/webhooks/issuer", json=[1, 2]).status_code == 400


def test_outbox_claim_and_ack(session_factory):
    with session_factory() as db:
        add_outbox_event(db, OutboxEvent, "deposits.recorded", "deposit", "tx-1", {"amount": "5.00"})
        add_outbox_event(db, OutboxEvent, "deposits.recorded", "deposit", "tx-2", {"amount": "6.00"})
        db.commit()

    with session_factory() as db:
        rows = claim_outbox_batch(db, OutboxEvent, limit=10)
        db.commit()
    assert len(rows) == 2
    assert {r["payload"]["aggregate_id"] for r in rows} == {"tx-1", "tx-2"}

    with session_factory() as db:
        mark_outbox_sent(db, OutboxEvent, rows[0]["id"])
        requeue_outbox_event(db, OutboxEvent, rows[1]["id"])
        db.commit()
        statuses = {row.id: row.status for row in db.execute(select(OutboxEvent)).scalars()}
    assert statuses == {rows[0]["id"]: "SENT", rows[1]["id"]: "PENDING"}


def test_scheduler_registers_both_cadences(service):
    scheduler = build_scheduler(service.planner, service.sweeper, 60, 900)

    jobs = {job.id: job for job in scheduler.get_jobs()}

    assert set(jobs) == {MONITOR_JOB_ID, SWEEP_JOB_ID}
    assert jobs[MONITOR_JOB_ID].max_instances == 3
    assert jobs[MONITOR_JOB_ID].coalesce is False


@pytest.mark.asyncio
async def test_monitor_cycle_errors_are_contained(service, add_account, session_factory):
    add_account("acc-1", "TAddr1")
    await run_monitor_cycle(service.planner)

    with session_factory() as db:
        (job,) = db.execute(select(Job)).scalars().all()
    assert job.job_type == MONITOR_BATCH

    class Broken:
        def run_cycle(self):
            raise RuntimeError("db down")

    await run_monitor_cycle(Broken())
