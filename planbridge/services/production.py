from __future__ import annotations

from typing import Any

import httpx


class ProductionSyncError(Exception):
    """Failure talking to the production plan system."""


class TransientSyncError(ProductionSyncError):
    """Timeouts, transport failures, 5xx and 429 responses."""


class PermanentSyncError(ProductionSyncError):
    """Rejected or malformed exchanges that will not succeed unchanged."""


class ProductionClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key}
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def find_contact_by_email(self, email: str) -> dict[str, Any] | None:
        items = await self._list("GET", "/contacts", params={"email": email})
        return items[0] if items else None

    async def create_contact(self, *, name: str, email: str, source_type: str) -> dict[str, Any]:
        payload = {"name": name, "email": email, "source_type": source_type}
        return await self._create("/contacts", payload)

    async def find_plan_by_reference(self, reference_id: str) -> dict[str, Any] | None:
        items = await self._list("GET", "/plans", params={"external_reference_id": reference_id})
        return items[0] if items else None

    async def create_plan(
        self,
        *,
        name: str,
        contact_id: str,
        external_reference_id: str,
        start_date: str,
        related_record_id: str | None = None,
        related_object_type: str | None = None,
    ) -> dict[str, Any]:
        payload = {
            "name": name,
            "contact_id": contact_id,
            "external_reference_id": external_reference_id,
            "start_date": start_date,
            "related_record_id": related_record_id,
            "related_object_type": related_object_type,
        }
        return await self._create("/plans", payload)

    async def list_plan_tasks(self, plan_id: str) -> list[dict[str, Any]]:
        return await self._list("GET", f"/plans/{plan_id}/tasks")

    async def create_task(self, plan_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._create(f"/plans/{plan_id}/tasks", payload)

    async def _list(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        response = await self._request(method, path, params=params)
        if response.status_code == 404:
            return []
        body = _decode(response)
        if isinstance(body, dict):
            body = body.get("items", body.get("data"))
        if not isinstance(body, list):
            raise PermanentSyncError(f"unexpected list response from {path}")
        return [item for item in body if isinstance(item, dict)]

    async def _create(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", path, json=payload)
        body = _decode(response)
        if not isinstance(body, dict) or not isinstance(body.get("id"), (str, int)):
            raise PermanentSyncError(f"production response from {path} is missing an id")
        body["id"] = str(body["id"])
        return body

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, params=params, json=json, headers=self.headers)
        except httpx.TimeoutException as exc:
            raise TransientSyncError(f"production request timed out: {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise TransientSyncError(f"production request failed: {method} {path}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSyncError(f"production returned {response.status_code} for {method} {path}")
        if response.status_code >= 400 and not (method == "GET" and response.status_code == 404):
            raise PermanentSyncError(
                f"production rejected {method} {path} with {response.status_code}: {_error_detail(response)}"
            )
        return response


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise PermanentSyncError("production response is not valid JSON") from exc


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message") or body.get("error")
        if detail:
            return str(detail)[:200]
    return str(body)[:200]
