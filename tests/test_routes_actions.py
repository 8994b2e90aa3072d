import json

import httpx
import pytest
from fastapi.testclient import TestClient

from qbo_actions.main import create_app
from qbo_actions.services import qbo_client as qbo_client_module


HEADERS = {
    "X-API-Key": "test-api-key",
    "X-QBO-Company-Id": "123",
    "Authorization": "Bearer token-abc",
}


class CapturedRequests(list):
    """Requests seen by the mock QuickBooks transport, in order."""

    def __init__(self):
        super().__init__()
        self.handler = lambda request: httpx.Response(200, json={})

    def respond_with(self, handler):
        self.handler = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.append(request)
        return self.handler(request)


@pytest.fixture
def qbo_requests(monkeypatch):
    captured = CapturedRequests()

    def fake_get_async_client(settings=None, *, transport=None):
        return httpx.AsyncClient(transport=httpx.MockTransport(captured))

    monkeypatch.setattr(qbo_client_module, "get_async_client", fake_get_async_client)
    return captured


@pytest.fixture
def client():
    with TestClient(create_app()) as test_client:
        yield test_client


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_actions_require_api_key(client, qbo_requests):
    response = client.post(
        "/actions/customer/get",
        headers={**HEADERS, "X-API-Key": "wrong"},
        json={"items": [{"parameters": {"customerId": "1"}}]},
    )
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid or missing API key"
    assert qbo_requests == []


def test_catalog_lists_supported_operations(client):
    response = client.get("/actions", headers={"X-API-Key": "test-api-key"})

    assert response.status_code == 200
    actions = response.json()["actions"]
    assert actions["item"] == ["get", "getAll"]
    assert "void" in actions["invoice"]
    assert "send" not in actions["estimate"]


def test_execute_get_returns_unwrapped_entity(client, qbo_requests):
    qbo_requests.respond_with(
        lambda request: httpx.Response(200, json={"Customer": {"Id": "1", "DisplayName": "Acme"}})
    )

    response = client.post(
        "/actions/customer/get",
        headers=HEADERS,
        json={"items": [{"parameters": {"customerId": "1"}}]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["resource"] == "customer"
    assert body["operation"] == "get"
    assert body["realm_id"] == "123"
    assert body["environment"] == "sandbox"
    assert body["results"] == [{"kind": "json", "records": [{"Id": "1", "DisplayName": "Acme"}]}]
    (request,) = qbo_requests
    assert request.url.path == "/v3/company/123/customer/1"
    assert request.headers["Authorization"] == "Bearer token-abc"
    assert response.headers["X-Request-Id"]


def test_execute_void_fetches_token_first(client, qbo_requests):
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json={"Invoice": {"Id": "42", "SyncToken": "3"}})
        return httpx.Response(200, json={"Invoice": {"Id": "42", "SyncToken": "4"}})

    qbo_requests.respond_with(handler)

    response = client.post(
        "/actions/invoice/void",
        headers=HEADERS,
        params={"environment": "production"},
        json={"items": [{"parameters": {"invoiceId": "42"}}]},
    )

    assert response.status_code == 200
    assert response.json()["environment"] == "prod"
    get_request, void_request = qbo_requests
    assert get_request.url.host == "quickbooks.api.intuit.com"
    assert void_request.url.params["SyncToken"] == "3"
    assert void_request.url.params["operation"] == "void"
    assert json.loads(void_request.content) == {}


def test_download_returns_base64_attachment(client, qbo_requests):
    qbo_requests.respond_with(lambda request: httpx.Response(200, content=b"%PDF-1.4"))

    response = client.post(
        "/actions/invoice/get",
        headers=HEADERS,
        json={"items": [{"json": {"row": 1}, "parameters": {"invoiceId": "7", "download": True}}]},
    )

    assert response.status_code == 200
    (result,) = response.json()["results"]
    assert result["kind"] == "binary"
    assert result["record"] == {"row": 1}
    assert result["binary"]["data"]["data"] == "JVBERi0xLjQ="
    assert result["binary"]["data"]["file_name"] == "invoice-7.pdf"
    assert qbo_requests[0].url.path == "/v3/company/123/invoice/7/pdf"


def test_illegal_pair_is_not_found(client, qbo_requests):
    response = client.post(
        "/actions/item/delete",
        headers=HEADERS,
        json={"items": [{"parameters": {"itemId": "1"}}]},
    )

    assert response.status_code == 404
    assert qbo_requests == []


def test_validation_error_is_unprocessable(client, qbo_requests):
    response = client.post(
        "/actions/customer/update",
        headers=HEADERS,
        json={"items": [{"parameters": {"customerId": "1", "updateFields": {}}}]},
    )

    assert response.status_code == 422
    assert "at least one field to update" in response.json()["message"]
    assert qbo_requests == []


def test_empty_batch_is_rejected(client, qbo_requests):
    response = client.post("/actions/customer/get", headers=HEADERS, json={"items": []})

    assert response.status_code == 422
    assert response.json()["message"] == "Validation error"


def test_missing_company_id(client, qbo_requests):
    headers = {key: value for key, value in HEADERS.items() if key != "X-QBO-Company-Id"}

    response = client.post("/actions/customer/get", headers=headers, json={"items": [{}]})

    assert response.status_code == 400


def test_missing_bearer_token(client, qbo_requests):
    headers = {**HEADERS, "Authorization": "Basic abc"}

    response = client.post("/actions/customer/get", headers=headers, json={"items": [{}]})

    assert response.status_code == 401


def test_quickbooks_not_found_maps_to_404(client, qbo_requests):
    fault = {"Fault": {"Error": [{"Message": "Object Not Found"}]}}
    qbo_requests.respond_with(lambda request: httpx.Response(404, json=fault))

    response = client.post(
        "/actions/vendor/get",
        headers=HEADERS,
        json={"items": [{"parameters": {"vendorId": "99"}}]},
    )

    assert response.status_code == 404
    assert "Object Not Found" in response.json()["message"]


def test_quickbooks_auth_failure_maps_to_401(client, qbo_requests):
    qbo_requests.respond_with(lambda request: httpx.Response(401, text="AuthenticationFailed"))

    response = client.post(
        "/actions/vendor/get",
        headers=HEADERS,
        json={"items": [{"parameters": {"vendorId": "99"}}]},
    )

    assert response.status_code == 401


def test_quickbooks_server_error_maps_to_502(client, qbo_requests):
    qbo_requests.respond_with(lambda request: httpx.Response(500, text="boom"))

    response = client.post(
        "/actions/vendor/get",
        headers=HEADERS,
        json={"items": [{"parameters": {"vendorId": "99"}}]},
    )

    assert response.status_code == 502
    assert response.json()["message"].startswith("QuickBooks API error")


def test_continue_on_fail_returns_error_records(client, qbo_requests):
    def handler(request):
        if request.url.path.endswith("/2"):
            return httpx.Response(404, json={"Fault": {"Error": [{"Message": "Object Not Found"}]}})
        return httpx.Response(200, json={"Vendor": {"Id": "1"}})

    qbo_requests.respond_with(handler)

    response = client.post(
        "/actions/vendor/get",
        headers=HEADERS,
        json={
            "continue_on_fail": True,
            "items": [{"parameters": {"vendorId": "1"}}, {"parameters": {"vendorId": "2"}}],
        },
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert results[0]["records"] == [{"Id": "1"}]
    assert "Object Not Found" in results[1]["records"][0]["error"]


def test_transport_failure_is_bad_gateway(client, qbo_requests):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    qbo_requests.respond_with(handler)

    response = client.post(
        "/actions/vendor/get",
        headers=HEADERS,
        json={"items": [{"parameters": {"vendorId": "1"}}]},
    )

    assert response.status_code == 502
    assert "ConnectError" in response.json()["message"]


def test_continue_on_fail_survives_transport_failure(client, qbo_requests):
    def handler(request):
        if request.url.path.endswith("/1"):
            raise httpx.ReadTimeout("read timed out", request=request)
        return httpx.Response(200, json={"Vendor": {"Id": "2"}})

    qbo_requests.respond_with(handler)

    response = client.post(
        "/actions/vendor/get",
        headers=HEADERS,
        json={
            "continue_on_fail": True,
            "items": [{"parameters": {"vendorId": "1"}}, {"parameters": {"vendorId": "2"}}],
        },
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert "ReadTimeout" in results[0]["records"][0]["error"]
    assert results[1]["records"] == [{"Id": "2"}]
