import os
from dataclasses import dataclass
from typing import Any, Callable, Optional

import pytest

os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("RETRY_MAX_WAIT", "0")

from qbo_actions.core.config import Settings, get_settings  # noqa: E402


@dataclass
class RecordedCall:
    method: str
    path: str
    query: Optional[dict[str, Any]]
    body: Optional[dict[str, Any]]


Responder = Callable[[str, str, Optional[dict[str, Any]], Optional[dict[str, Any]]], dict[str, Any]]


class FakeQuickBooksClient:
    """Stands in for QuickBooksClient; records every call in order."""

    def __init__(
        self,
        responder: Responder | None = None,
        *,
        company_id: str = "123",
        pdf: bytes = b"%PDF-1.4 fake",
    ) -> None:
        self.company_id = company_id
        self.calls: list[RecordedCall] = []
        self._responder = responder or (lambda method, path, query, body: {})
        self._pdf = pdf

    async def request(self, method, path, *, query=None, body=None):
        self.calls.append(RecordedCall(method, path, query, body))
        return self._responder(method, path, query, body)

    async def request_binary(self, path, *, query=None, accept="application/pdf"):
        self.calls.append(RecordedCall("GET", path, query, None))
        return self._pdf


@pytest.fixture
def settings() -> Settings:
    return Settings(API_KEY="test-api-key", RETRY_MAX_ATTEMPTS=3, RETRY_MAX_WAIT=0)


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_client_factory():
    return FakeQuickBooksClient
