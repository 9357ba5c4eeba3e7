"""Ledger indexer client: recent inbound USDT transfers for one address."""

from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx
import redis
from pydantic import ValidationError

from cardfund.common.config import settings
from cardfund.common.logging import logger
from cardfund.common.metrics import indexer_requests_total, transfers_observed_total
from cardfund.services.deposits.errors import RateLimitedError, ResponseValidationError, TransientExternalError
from cardfund.services.deposits.schemas import Transfer


COOLDOWN_KEY = "indexer:cooldown"
CENTS = Decimal("0.01")


def to_readable_amount(raw_amount: str, decimals: int = 6) -> Decimal:
    """Integer token quantity -> Decimal rounded to two places."""

    return (Decimal(int(raw_amount)) / (Decimal(10) ** decimals)).quantize(CENTS, rounding=ROUND_HALF_UP)


def is_final(item: dict[str, Any]) -> bool:
    """SUCCESS result, confirmed, and not reverted."""

    return item.get("finalResult") == "SUCCESS" and item.get("confirmed") is True and item.get("revert") is False


class RateLimitCooldown:
    """Process-shared pause after a 429, stored in Redis with a TTL."""

    def __init__(self, rdb, cooldown_ms: int = 1500) -> None:
        self.rdb = rdb
        self.cooldown_ms = cooldown_ms

    @classmethod
    def from_settings(cls) -> "RateLimitCooldown":
        return cls(redis.Redis.from_url(settings.redis_url, decode_responses=True), settings.rate_limit_cooldown_ms)

    def trip(self) -> None:
        try:
            self.rdb.set(COOLDOWN_KEY, "1", px=self.cooldown_ms)
        except redis.RedisError as exc:
            logger.warning("rate limit cooldown write failed: %s", exc)

    def remaining_seconds(self) -> float:
        try:
            ttl_ms = self.rdb.pttl(COOLDOWN_KEY)
        except redis.RedisError as exc:
            logger.warning("rate limit cooldown read failed: %s", exc)
            return 0.0
        if ttl_ms is None or ttl_ms <= 0:
            return 0.0
        return ttl_ms / 1000.0


class LedgerPoller:
    """Queries the indexer once per call; filtering is stateless and idempotent."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        api_key_header: str = "TRON-PRO-API-KEY",
        contract_address: str = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t",
        decimals: int = 6,
        window_minutes: int = 10,
        page_limit: int = 50,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        service_name: str = "deposits",
    ) -> None:
        self.contract_address = contract_address
        self.decimals = decimals
        self.window = timedelta(minutes=window_minutes)
        self.page_limit = page_limit
        self.service_name = service_name
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers[api_key_header] = api_key
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers, transport=transport)

    @classmethod
    def from_settings(cls) -> "LedgerPoller":
        return cls(
            base_url=settings.indexer_base_url,
            api_key=settings.indexer_api_key,
            api_key_header=settings.indexer_api_key_header,
            contract_address=settings.usdt_contract_address,
            decimals=settings.usdt_decimals,
            window_minutes=settings.polling_window_minutes,
            page_limit=settings.polling_page_limit,
            timeout=settings.indexer_timeout_seconds,
            service_name=settings.service_name,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def recent_transfers(self, address: str, now: datetime | None = None) -> list[Transfer]:
        """Final inbound transfers to `address` within the polling window."""

        now = now or datetime.now(timezone.utc)
        end_ms = int(now.timestamp() * 1000)
        start_ms = int((now - self.window).timestamp() * 1000)
        params = {
            "start": 0,
            "limit": self.page_limit,
            "relatedAddress": address,
            "contract_address": self.contract_address,
            "start_timestamp": start_ms,
            "end_timestamp": end_ms,
            "confirm": "true",
        }
        try:
            resp = await self._client.get("/api/token_trc20/transfers", params=params)
        except httpx.HTTPError as exc:
            indexer_requests_total.labels(service=self.service_name, status="error").inc()
            raise TransientExternalError(f"indexer request failed for {address}: {exc}") from exc

        indexer_requests_total.labels(service=self.service_name, status=str(resp.status_code)).inc()
        if resp.status_code == 429:
            raise RateLimitedError(f"indexer rate limited for {address}", status_code=429)
        if resp.status_code >= 300:
            raise TransientExternalError(
                f"indexer returned {resp.status_code} for {address}",
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise ResponseValidationError("indexer returned non-JSON body") from exc
        items = body.get("token_transfers") if isinstance(body, dict) else None
        if not isinstance(items, list):
            raise ResponseValidationError("indexer body has no token_transfers list")

        transfers = []
        for item in items:
            if not isinstance(item, dict) or not is_final(item):
                continue
            if item.get("to_address") != address:
                continue
            try:
                decimals = (item.get("tokenInfo") or {}).get("tokenDecimal", self.decimals)
                transfers.append(
                    Transfer(
                        transfer_id=item["transaction_id"],
                        amount=to_readable_amount(item["quant"], int(decimals)),
                        raw_amount=str(item["quant"]),
                        from_address=item.get("from_address", ""),
                        to_address=item["to_address"],
                        timestamp=datetime.fromtimestamp(item["block_ts"] / 1000, tz=timezone.utc),
                        confirmed=item["confirmed"],
                        reverted=item["revert"],
                        result=item["finalResult"],
                    )
                )
            except (KeyError, TypeError, ValueError, ValidationError) as exc:
                raise ResponseValidationError(f"malformed transfer record: {exc}") from exc
        transfers_observed_total.labels(service=self.service_name).inc(len(transfers))
        return transfers
