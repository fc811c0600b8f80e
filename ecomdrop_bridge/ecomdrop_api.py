from __future__ import annotations

import hashlib
import logging
import time
from typing import Any

import httpx

from ecomdrop_bridge.config import settings
from ecomdrop_bridge.security import mask_secret

logger = logging.getLogger(__name__)

# Ecomdrop bot field that stores the Dropi integration token for each country.
DROPI_COUNTRY_FIELDS: dict[str, str] = {
    "CO": "640597",
    "EC": "805359",
    "CL": "665134",
    "GT": "747995",
    "MX": "641097",
    "PA": "742965",
    "PE": "142979",
    "PY": "240677",
}


class EcomdropApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


def dispatch_idempotency_key(*, shop: str, resource_id: Any, event_type: str) -> str:
    raw = f"{shop}:{resource_id}:{event_type}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class EcomdropApiClient:
    def __init__(self) -> None:
        self._timeout = settings.ECOMDROP_REQUEST_TIMEOUT_SECONDS
        self._flows_cache: dict[str, tuple[float, list[dict[str, Any]]]] = {}

    async def list_flows(self, *, api_key: str) -> list[dict[str, Any]]:
        self._prune_flows_cache(time.monotonic())
        cached = self._flows_cache.get(api_key)
        if cached:
            return cached[1]

        body = await self._request_json(method="GET", path="/accounts/flows", api_key=api_key)
        flows = [flow for flow in body if isinstance(flow, dict)] if isinstance(body, list) else []
        now = time.monotonic()
        self._prune_flows_cache(now)
        self._flows_cache[api_key] = (now, flows)
        logger.info(
            "ecomdrop.flows_fetched",
            extra={"api_key": mask_secret(api_key), "count": len(flows)},
        )
        return flows

    def _prune_flows_cache(self, now: float) -> None:
        ttl = settings.ECOMDROP_FLOWS_CACHE_SECONDS
        expired = [key for key, (fetched_at, _) in self._flows_cache.items() if now - fetched_at >= ttl]
        for key in expired:
            del self._flows_cache[key]

    def clear_flows_cache(self, api_key: str | None = None) -> None:
        if api_key is None:
            self._flows_cache.clear()
        else:
            self._flows_cache.pop(api_key, None)

    async def trigger_flow(
        self,
        *,
        api_key: str,
        flow_id: str,
        event: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> Any:
        """Hand an event document to an Ecomdrop flow.

        Returns once Ecomdrop has accepted the trigger; flow completion is
        reported later through the callback endpoint. Any 2xx counts as
        accepted, so a plain-text acknowledgement comes back as a string.
        """
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return await self._request_json(
            method="POST",
            path=f"/accounts/flows/{flow_id}/trigger",
            api_key=api_key,
            json_body=event,
            headers=headers,
            allow_text=True,
        )

    async def save_bot_field(self, *, api_key: str, field_id: str, value: str) -> Any:
        return await self._request_json(
            method="POST",
            path=f"/accounts/bot_fields/{field_id}",
            api_key=api_key,
            form_body={"value": value},
        )

    async def validate_dropi_integration(self, *, api_key: str, country: str, dropi_token: str) -> Any:
        field_id = DROPI_COUNTRY_FIELDS.get(country.upper())
        if not field_id:
            raise EcomdropApiError(message=f"País no válido: {country}", status_code=400)
        return await self.save_bot_field(api_key=api_key, field_id=field_id, value=dropi_token)

    async def _request_json(
        self,
        *,
        method: str,
        path: str,
        api_key: str,
        json_body: dict[str, Any] | None = None,
        form_body: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        allow_text: bool = False,
    ) -> Any:
        url = f"{settings.ecomdrop_api_base_url}{path}"
        request_headers = {"accept": "application/json", "X-ACCESS-TOKEN": api_key}
        if headers:
            request_headers.update(headers)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(
                    method,
                    url,
                    json=json_body,
                    data=form_body,
                    headers=request_headers,
                )
        except httpx.TimeoutException as exc:
            raise EcomdropApiError(message=f"Timed out calling Ecomdrop: {exc}", status_code=504) from exc
        except httpx.RequestError as exc:
            raise EcomdropApiError(message=f"Network error while calling Ecomdrop: {exc}") from exc

        if response.status_code >= 400:
            raise EcomdropApiError(
                message=f"API Error: {response.status_code} - {response.text}",
                status_code=502,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            if allow_text:
                return response.text
            raise EcomdropApiError(message="Ecomdrop API returned invalid JSON") from exc
