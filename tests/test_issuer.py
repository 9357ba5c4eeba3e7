"""Issuer client: token signing, request headers and response mapping."""

import json
from decimal import Decimal

import pytest

from cardfund.services.deposits.errors import TransientExternalError
from cardfund.services.issuer.signing import auth_payload, build_token, public_decrypt, request_id


def test_auth_payload_is_compact_with_fixed_key_order():
    assert auth_payload("s", 1700000000000) == b'{"secret":"s","timestamp":1700000000000}'
    assert auth_payload("s", 1, "child-7") == b'{"secret":"s","timestamp":1,"childUserId":"child-7"}'


def test_token_decrypts_with_public_key(rsa_key):
    token = build_token(rsa_key, "issuer-secret", "user-9", timestamp_ms=1700000000123)

    payload = json.loads(public_decrypt(rsa_key, token))

    assert payload == {"secret": "issuer-secret", "timestamp": 1700000000123, "childUserId": "user-9"}


def test_blinded_signature_is_deterministic(rsa_key):
    first = build_token(rsa_key, "issuer-secret", "user-9", timestamp_ms=1)
    second = build_token(rsa_key, "issuer-secret", "user-9", timestamp_ms=1)

    assert first == second


def test_request_id_has_millisecond_prefix():
    millis, _, suffix = request_id().partition("-")
    assert millis.isdigit() and len(millis) == 13
    assert len(suffix) == 36


@pytest.mark.asyncio
async def test_topup_sends_signed_headers(issuer_client, fake_issuer, rsa_key):
    result = await issuer_client.topup_wallet("user-1", Decimal("48.80"), idempotency_key="t1")

    assert result.ok
    request = fake_issuer.requests[0]
    assert request.headers["X-LICENSE"] == "license-123"
    assert request.headers["X-Idempotency-Key"] == "t1"
    assert request.headers["X-REQUEST-ID"]
    token = request.headers["Authorization"].removeprefix("Bearer ")
    assert json.loads(public_decrypt(rsa_key, token))["childUserId"] == "user-1"
    assert json.loads(request.content) == {"userId": "user-1", "amount": 48.8}


@pytest.mark.asyncio
async def test_business_error_is_a_result_not_an_exception(issuer_client, fake_issuer):
    fake_issuer.topup_code = 400

    result = await issuer_client.topup_wallet("user-1", Decimal("1"))

    assert not result.ok
    assert result.message == "insufficient balance"


@pytest.mark.asyncio
async def test_applications_are_parsed_in_issuer_order(issuer_client, fake_issuer):
    fake_issuer.add_application("a2", 50.0, create_time="2026-10-01 08:00:00")
    fake_issuer.add_application(101, 12.5, create_time="2026-10-01T09:00:00Z")

    apps = await issuer_client.get_topup_applications("user-1")

    assert [a.id for a in apps] == ["a2", "101"]
    assert apps[0].amount == Decimal("50.0")
    assert apps[0].create_time.tzinfo is not None
    assert apps[1].create_time.hour == 9


@pytest.mark.asyncio
async def test_http_failure_maps_to_transient_error(issuer_client, fake_issuer):
    fake_issuer.list_status = 500

    with pytest.raises(TransientExternalError):
        await issuer_client.get_topup_applications("user-1")


@pytest.mark.asyncio
async def test_accept_and_reject_hit_application_paths(issuer_client, fake_issuer):
    fake_issuer.add_application("a1", 1.0)
    fake_issuer.add_application("a2", 1.0)

    assert (await issuer_client.accept_topup_application("a1")).ok
    assert (await issuer_client.reject_topup_application("a2")).ok
    assert fake_issuer.accepted == ["a1"]
    assert fake_issuer.rejected == ["a2"]
    assert [a["status"] for a in fake_issuer.applications] == [1, 2]
