from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from renewsync.core.config import Settings, get_settings
from renewsync.core.errors import IntegrationUnavailableError, PartnerApiError
from renewsync.providers.partner.base import PARTNER_STATUS_ACTIVE, PartnerSystem, PartnerUser
from renewsync.services.resilience import CircuitBreaker, get_resilience_redis, retry_async
from renewsync.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "partner_api"


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class PartnerApiClient:
    """Client for the partner platform's user and system-credential endpoints.

    Every call runs through the shared retry helper and a circuit breaker; an
    open breaker surfaces as IntegrationUnavailableError.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        settings: Settings | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._breaker = breaker

    @property
    def configured(self) -> bool:
        return bool(self._settings.partner_api_base_url and self._settings.partner_api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per process for connection pooling.
        self._client = httpx.AsyncClient(
            base_url=self._settings.partner_api_base_url or "",
            timeout=self._settings.ext_call_timeout_ms / 1000.0,
            headers={"Content-Type": "application/json"},
        )
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        redis = await get_resilience_redis()
        self._breaker = CircuitBreaker(_INTEGRATION, redis=redis)
        return self._breaker

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.configured:
            raise IntegrationUnavailableError("partner API is not configured")
        client = self._get_client()
        headers = {"Authorization": f"Bearer {self._settings.partner_api_key}"}
        breaker = await self._get_breaker()
        await breaker.before_call()
        start = time.monotonic()

        async def _call() -> httpx.Response:
            response = await client.request(method, path, json=json, headers=headers)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            response = await retry_async(_call, retryable=_retryable)
        except (httpx.HTTPError, TimeoutError) as exc:
            await breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("partner_api_request_failed method=%s path=%s", method, path, exc_info=exc)
            raise PartnerApiError(f"partner API request failed: {method} {path}") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            # Client errors mean a bad request, not an unhealthy partner.
            await breaker.record_success()
            record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=False)
            error = PartnerApiError(f"partner API error: {response.status_code} {method} {path}")
            setattr(error, "status_code", response.status_code)
            raise error

        await breaker.record_success()
        record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=True)
        try:
            body = response.json()
        except ValueError as exc:
            raise PartnerApiError(f"partner API returned non-JSON body: {method} {path}") from exc
        if not isinstance(body, dict):
            raise PartnerApiError(f"partner API returned an unexpected envelope: {method} {path}")
        if body.get("success") is False:
            message = body.get("message") or body.get("error") or "request rejected"
            raise PartnerApiError(f"partner API rejected {method} {path}: {message}")
        return body

    async def list_users(self) -> list[PartnerUser]:
        body = await self._request("GET", "/users/get")
        return [PartnerUser.model_validate(item) for item in body.get("data") or []]

    async def create_user(
        self,
        *,
        username: str,
        password: str,
        status: str = PARTNER_STATUS_ACTIVE,
        exp_date: str = "",
        system: int | None = None,
    ) -> PartnerUser:
        payload: dict[str, Any] = {
            "username": username,
            "password": password,
            "status": status,
            "exp_date": exp_date,
        }
        if system is not None:
            payload["system"] = system
        body = await self._request("POST", "/users/adicionar", json=payload)
        # The partner returns either the new id at top level or the full record under data.
        if body.get("id") is not None:
            return PartnerUser(id=int(body["id"]), last_access=None, **payload)
        data = body.get("data")
        if not isinstance(data, dict):
            raise PartnerApiError("partner API did not return the created user")
        return PartnerUser.model_validate(data)

    async def update_user(self, user_id: int, fields: dict[str, Any]) -> None:
        await self._request("PUT", f"/users/editar/{user_id}", json=fields)

    async def delete_user(self, user_id: int) -> None:
        await self._request("DELETE", f"/users/apagar/{user_id}")

    async def list_systems(self) -> list[PartnerSystem]:
        body = await self._request("GET", "/system_credentials/get")
        return [PartnerSystem.model_validate(item) for item in body.get("data") or []]

    async def create_system(self, *, system_id: str, username: str, password: str) -> None:
        await self._request(
            "POST",
            "/system_credentials/adicionar",
            json={"system_id": system_id, "username": username, "password": password},
        )

    async def update_system(self, system_id: str, fields: dict[str, Any]) -> None:
        await self._request("PUT", f"/system_credentials/editar/{system_id}", json=fields)


def get_partner_client() -> PartnerApiClient | None:
    # No client when the partner API is not configured; callers skip partner sync.
    client = PartnerApiClient()
    return client if client.configured else None
