"""Signed HTTP client for the card issuer's open API.

Every call carries the license header, a fresh request id and an RSA-signed
bearer token. Transport problems and non-2xx responses raise
`TransientExternalError`; bodies that do not parse raise
`ResponseValidationError`. Business-level failures (`code != 200`) are
returned as `IssuerResult(status="error")` for the caller to inspect.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from cardfund.common.config import settings
from cardfund.common.logging import logger
from cardfund.common.metrics import issuer_requests_total
from cardfund.services.deposits.errors import RateLimitedError, ResponseValidationError, TransientExternalError
from cardfund.services.issuer.signing import build_token, load_private_key, request_id


APPLICATION_PENDING = 0
APPLICATION_APPROVED = 1
APPLICATION_REJECTED = 2


def parse_issuer_time(value: Any) -> Any:
    """Accept epoch milliseconds, ISO strings and `YYYY-MM-DD HH:MM:SS` (UTC)."""

    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return value


class TopupApplication(BaseModel):
    """Issuer-side pending credit request."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    amount: Decimal = Field(validation_alias=AliasChoices("applyAmount", "amount"))
    status: int
    create_time: datetime = Field(validation_alias=AliasChoices("createTime", "createdAt", "create_time"))

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_from_json_number(cls, value: Any) -> Any:
        # JSON floats go through str() so 48.8 stays 48.8.
        return Decimal(str(value)) if isinstance(value, float) else value

    @field_validator("create_time", mode="before")
    @classmethod
    def _create_time(cls, value: Any) -> Any:
        return parse_issuer_time(value)


class IssuerResult(BaseModel):
    status: str
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "success"


class IssuerClient:
    """Async wrapper over the issuer endpoints used by the deposit pipeline."""

    def __init__(
        self,
        base_url: str,
        secret_key: str,
        license_key: str,
        private_key: RSAPrivateKey,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        service_name: str = "deposits",
    ) -> None:
        self.secret_key = secret_key
        self.private_key = private_key
        self.service_name = service_name
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"X-LICENSE": license_key},
            transport=transport,
        )

    @classmethod
    def from_settings(cls) -> "IssuerClient":
        return cls(
            base_url=settings.issuer_base_url,
            secret_key=settings.issuer_secret_key,
            license_key=settings.issuer_license_key,
            private_key=load_private_key(settings.issuer_private_key_path),
            timeout=settings.issuer_timeout_seconds,
            service_name=settings.service_name,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        issuer_user_id: str | None = None,
        json: dict | None = None,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> dict:
        request_headers = {
            "Authorization": f"Bearer {build_token(self.private_key, self.secret_key, issuer_user_id)}",
            "X-REQUEST-ID": request_id(),
            **(headers or {}),
        }
        try:
            resp = await self._client.request(method, path, json=json, params=params, headers=request_headers)
        except httpx.HTTPError as exc:
            issuer_requests_total.labels(service=self.service_name, operation=operation, status="error").inc()
            raise TransientExternalError(f"issuer {operation} request failed: {exc}") from exc

        issuer_requests_total.labels(
            service=self.service_name,
            operation=operation,
            status=str(resp.status_code),
        ).inc()
        if resp.status_code == 429:
            raise RateLimitedError(f"issuer {operation} rate limited", status_code=429)
        if resp.status_code >= 300:
            raise TransientExternalError(
                f"issuer {operation} returned {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise ResponseValidationError(f"issuer {operation} returned non-JSON body") from exc
        if not isinstance(body, dict):
            raise ResponseValidationError(f"issuer {operation} returned {type(body).__name__}, expected object")
        return body

    @staticmethod
    def _result(body: dict) -> IssuerResult:
        if body.get("code") == 200:
            return IssuerResult(status="success", message=str(body.get("msg") or ""))
        return IssuerResult(status="error", message=str(body.get("msg") or body.get("message") or body))

    async def topup_wallet(
        self,
        issuer_user_id: str,
        amount: Decimal,
        idempotency_key: str | None = None,
    ) -> IssuerResult:
        """Credit the issuer wallet of one user; creates a pending application."""

        headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else None
        body = await self._request(
            "topup",
            "POST",
            "/open-api/wallet/topup",
            issuer_user_id=issuer_user_id,
            json={"userId": issuer_user_id, "amount": float(amount)},
            headers=headers,
        )
        result = self._result(body)
        if not result.ok:
            logger.warning("issuer topup rejected issuer_user_id=%s message=%s", issuer_user_id, result.message)
        return result

    async def get_topup_applications(
        self,
        issuer_user_id: str,
        page: int = 1,
        limit: int = 5,
        status: int | None = APPLICATION_PENDING,
    ) -> list[TopupApplication]:
        """Recent applications for one user, in the order the issuer returns them."""

        params: dict[str, Any] = {"userId": issuer_user_id, "page": page, "limit": limit}
        if status is not None:
            params["status"] = status
        body = await self._request(
            "get_applications",
            "GET",
            "/open-api/wallet/topup/applications",
            issuer_user_id=issuer_user_id,
            params=params,
        )
        if body.get("code") != 200:
            raise TransientExternalError(f"issuer get_applications code={body.get('code')} msg={body.get('msg')}")
        data = body.get("data")
        if isinstance(data, dict):
            data = data.get("records", data.get("applications"))
        if data is None:
            return []
        if not isinstance(data, list):
            raise ResponseValidationError("issuer applications payload is not a list")
        try:
            return [TopupApplication.model_validate(item) for item in data]
        except ValidationError as exc:
            raise ResponseValidationError(f"malformed issuer application: {exc}") from exc

    async def accept_topup_application(self, application_id: str) -> IssuerResult:
        body = await self._request(
            "accept_application",
            "POST",
            f"/open-api/wallet/topup/applications/{application_id}/accept",
        )
        return self._result(body)

    async def reject_topup_application(self, application_id: str) -> IssuerResult:
        body = await self._request(
            "reject_application",
            "POST",
            f"/open-api/wallet/topup/applications/{application_id}/reject",
        )
        return self._result(body)
