"""HTTP adapter for a platform that exposes the shared health store as JSON.

Endpoints used (all relative to ``base_url``):
    GET  /v1/records/{data_type}?start=&end=&page_token=   — Raw records, paginated
    GET  /v1/aggregates/{data_type}?start=&end=            — Deduplicated aggregate
    GET  /v1/changes/{data_type}?token=                    — Change feed since token
    POST /v1/changes/{data_type}/token                     — Fresh continuation token

Every failure is turned into a typed ``HealthSyncError`` by
``classify_platform_error`` before it leaves this module.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from src.healthsync.adapters.classification import classify_platform_error
from src.healthsync.base import (
    ChangesResponse,
    HealthPlatform,
    PlatformAggregate,
    RawRecord,
    TimeRange,
)
from src.healthsync.errors import PlatformError

logger = logging.getLogger("healthsync.adapters.http")

_MAX_PAGES = 100


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _parse_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _error_detail(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or None
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                return str(body[key])
    return None


class HttpHealthPlatform(HealthPlatform):
    """``HealthPlatform`` backed by a JSON REST API.

    Args:
        base_url:    Root URL of the platform API.
        api_key:     Bearer token; omitted from requests when empty.
        timeout:     Per-request timeout in seconds.
        http_client: Optional pre-configured httpx client (for testing).
                     The adapter never closes a client it did not create.
    """

    PLATFORM_ID = "http"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "HttpHealthPlatform":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # HealthPlatform interface
    # ------------------------------------------------------------------

    async def fetch_raw_records(self, data_type: str, time_range: TimeRange) -> list[RawRecord]:
        records: list[RawRecord] = []
        params: dict[str, str] = {
            "start": time_range.start.isoformat(),
            "end": time_range.end.isoformat(),
        }
        for _ in range(_MAX_PAGES):
            body = await self._request("GET", f"/v1/records/{data_type}", data_type, params=params)
            records.extend(self._parse_record(r) for r in body.get("records", []))
            page_token = body.get("next_page_token")
            if not page_token:
                break
            params = {**params, "page_token": str(page_token)}
        else:
            logger.warning(
                "Stopped paging %s records after %d pages (%d records)",
                data_type,
                _MAX_PAGES,
                len(records),
            )
        return records

    async def fetch_platform_aggregate(
        self, data_type: str, time_range: TimeRange
    ) -> PlatformAggregate | None:
        body = await self._request(
            "GET",
            f"/v1/aggregates/{data_type}",
            data_type,
            params={"start": time_range.start.isoformat(), "end": time_range.end.isoformat()},
            allow_not_found=True,
        )
        if not body:
            return None
        sources = body.get("sources_included")
        return PlatformAggregate(
            data_type=data_type,
            time_range=time_range,
            sum_value=_parse_float(body.get("sum")),
            avg_value=_parse_float(body.get("avg")),
            min_value=_parse_float(body.get("min")),
            max_value=_parse_float(body.get("max")),
            count=body.get("count"),
            included_records=body.get("included_records"),
            excluded_records=body.get("excluded_records"),
            sources_included=list(sources) if sources is not None else None,
            deduplication_method=body.get("deduplication_method"),
            raw=body,
        )

    async def fetch_changes_since(self, data_type: str, token: str) -> ChangesResponse:
        body = await self._request(
            "GET", f"/v1/changes/{data_type}", data_type, params={"token": token}
        )
        return ChangesResponse(
            records=[self._parse_record(r) for r in body.get("records", [])],
            next_token=body.get("next_token"),
            has_more=bool(body.get("has_more", False)),
        )

    async def request_initial_token(self, data_type: str) -> str:
        body = await self._request("POST", f"/v1/changes/{data_type}/token", data_type)
        token = body.get("token")
        if not token:
            raise PlatformError(f"Platform returned no token for {data_type}")
        return str(token)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def _request(
        self,
        method: str,
        path: str,
        data_type: str,
        params: dict | None = None,
        allow_not_found: bool = False,
    ) -> dict:
        """Send one request and return the decoded JSON body.

        Raises:
            HealthSyncError: Any transport or HTTP failure, already classified.
        """
        url = f"{self._base_url}{path}"
        try:
            response = await self._client().request(
                method, url, params=params, headers=self._build_headers()
            )
            if allow_not_found and response.status_code == 404:
                return {}
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise classify_platform_error(
                exc, data_type=data_type, detail=_error_detail(exc.response)
            ) from exc
        except httpx.HTTPError as exc:
            raise classify_platform_error(exc, data_type=data_type) from exc

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise PlatformError(
                f"Non-JSON response from {method} {path}", cause=exc, status_code=response.status_code
            ) from exc
        if not isinstance(body, dict):
            raise PlatformError(f"Unexpected response shape from {method} {path}")
        return body

    @staticmethod
    def _parse_record(item: dict) -> RawRecord:
        device = item.get("device") or {}
        method = str(item.get("recording_method", "")).lower()
        start = _parse_dt(item.get("start_time") or item.get("time"))
        if start is None:
            raise PlatformError(f"Platform record without a start time: {item.get('id')!r}")
        return RawRecord(
            source_id=str(item.get("source_id") or item.get("data_origin") or "unknown"),
            timestamp=start,
            end_timestamp=_parse_dt(item.get("end_time")),
            value=_parse_float(item.get("value")),
            device_model=device.get("model"),
            device_manufacturer=device.get("manufacturer"),
            app_name=item.get("app_name"),
            is_manual=method in ("manual", "manual_entry", "actively_recorded_manual"),
            record_id=item.get("id"),
            metadata={k: v for k, v in item.items() if k in ("unit", "zone_offset")},
        )
