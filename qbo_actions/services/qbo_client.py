from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Optional

import httpx

from qbo_actions.core.config import Settings, get_settings
from qbo_actions.core.http import get_async_client, request_with_retry_and_backoff
from qbo_actions.schemas.actions import QuickBooksCredentials


class QuickBooksApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class QuickBooksNotFoundError(QuickBooksApiError):
    pass


class QuickBooksAuthError(QuickBooksApiError):
    pass


class QuickBooksClient:
    """Authenticated access to the QuickBooks Online v3 API for one company.

    Token refresh is owned by the caller; a 401/403 surfaces as
    ``QuickBooksAuthError``. Throttling and 5xx responses are retried by the
    transport before an error is raised.
    """

    SANDBOX_API_BASE = "https://sandbox-quickbooks.api.intuit.com"
    PROD_API_BASE = "https://quickbooks.api.intuit.com"

    def __init__(
        self,
        credentials: QuickBooksCredentials,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.credentials = credentials
        self.settings = settings or get_settings()
        self.logger = logging.getLogger("qbo_actions.services.qbo")
        self._http_client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "QuickBooksClient":
        if self._http_client is None:
            self._http_client = get_async_client(self.settings)
            self._owns_client = True
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def company_id(self) -> str:
        return self.credentials.company_id

    @property
    def base_url(self) -> str:
        if self.credentials.environment == "sandbox":
            return self.SANDBOX_API_BASE
        return self.PROD_API_BASE

    async def request(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._send(
            method,
            path,
            query=query,
            body=body,
            accept="application/json",
        )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise QuickBooksApiError(
                f"QBO {method.upper()} {path} returned a non-JSON body",
                status_code=response.status_code,
                body=response.text,
            ) from exc

    async def request_binary(
        self,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        accept: str = "application/pdf",
    ) -> bytes:
        response = await self._send("GET", path, query=query, body=None, accept=accept)
        return response.content

    async def _send(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None,
        body: dict[str, Any] | None,
        accept: str,
    ) -> httpx.Response:
        if self._http_client is None:
            raise RuntimeError("QuickBooksClient must be used as an async context manager")
        method = method.upper()
        url = self._build_url(path)
        params = {key: value for key, value in (query or {}).items() if value is not None}
        params["minorversion"] = self.settings.qbo_minor_version
        headers = {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "Accept": accept,
        }
        request_kwargs: dict[str, Any] = {"params": params, "headers": headers}
        if method != "GET":
            headers["Content-Type"] = "application/json"
            request_kwargs["json"] = body if body is not None else {}

        start = perf_counter()
        try:
            response = await request_with_retry_and_backoff(
                self._http_client,
                method,
                url,
                settings=self.settings,
                **request_kwargs,
            )
        except httpx.HTTPError as exc:
            self.logger.error(
                "qbo_transport_failed",
                extra={
                    "method": method,
                    "path": path,
                    "error": str(exc),
                    "realm_id": self.company_id,
                    "environment": self.credentials.environment,
                },
            )
            raise QuickBooksApiError(f"QBO {method} {path} failed: {exc.__class__.__name__} {exc}") from exc
        latency_ms = (perf_counter() - start) * 1000

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._map_error(method, path, exc.response) from exc

        self.logger.debug(
            "qbo_request_completed",
            extra={
                "method": method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(latency_ms, 2),
            },
        )
        return response

    def _map_error(self, method: str, path: str, response: httpx.Response) -> QuickBooksApiError:
        body = response.text
        status_code = response.status_code
        self.logger.error(
            "qbo_request_failed",
            extra={
                "method": method,
                "path": path,
                "status": status_code,
                "body": body,
                "realm_id": self.company_id,
                "environment": self.credentials.environment,
            },
        )
        message = f"QBO {method} {path} failed: {status_code} {_extract_fault_message(response)}"
        if status_code == 404:
            return QuickBooksNotFoundError(message, status_code=status_code, body=body)
        if status_code in (401, 403):
            return QuickBooksAuthError(message, status_code=status_code, body=body)
        return QuickBooksApiError(message, status_code=status_code, body=body)

    def _build_url(self, path: str) -> str:
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self.base_url}{normalized_path}"


def _extract_fault_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    fault = payload.get("Fault") if isinstance(payload, dict) else None
    errors = fault.get("Error") if isinstance(fault, dict) else None
    if isinstance(errors, list) and errors:
        first = errors[0]
        message = first.get("Message") or ""
        detail = first.get("Detail")
        return f"{message}: {detail}" if detail else message
    return response.text
