from __future__ import annotations

import json

import httpx
import pytest

from loader_governance.services.errors import (
    AuthorizationError,
    ConflictError,
    DownstreamTimeoutError,
    DownstreamUnavailableError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from loader_governance.services.service_clients import HttpApprovalService, HttpConfigurationService

VERSION_BODY = {
    "id": "6f1c9f44-8a4e-4d7e-9f38-3d7f6bd2a001",
    "loader_code": "ORDERS",
    "version_number": 2,
    "lifecycle_state": "DRAFT",
}


def _configuration(handler) -> HttpConfigurationService:
    return HttpConfigurationService("http://config.local/", transport=httpx.MockTransport(handler))


def test_exists_reads_existence_flags() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, json={"loader_code": "ORDERS", "exists": True, "has_working_copy": False})

    client = _configuration(handler)

    assert client.exists("ORDERS") is True
    assert client.has_working_copy("ORDERS") is False
    assert seen == ["/api/loaders/ORDERS/exists", "/api/loaders/ORDERS/exists"]


def test_create_draft_sends_identity_and_payload() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json=VERSION_BODY)

    ref = _configuration(handler).create_draft(
        "ORDERS",
        {"max_parallel_executions": 4},
        "alice",
        token="abc123",
        import_label="wave-1",
    )

    assert ref.version_id == VERSION_BODY["id"]
    assert ref.version_number == 2
    assert captured["path"] == "/api/loaders/ORDERS/drafts"
    assert captured["headers"]["X-Username"] == "alice"
    assert captured["headers"]["Authorization"] == "Bearer abc123"
    assert captured["body"] == {
        "max_parallel_executions": 4,
        "change_type": "IMPORT_UPDATE",
        "import_label": "wave-1",
    }


def test_create_direct_posts_full_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path == "/api/loaders"
        assert body["loader_code"] == "INVOICES"
        assert body["change_type"] == "IMPORT_CREATE"
        return httpx.Response(201, json={**VERSION_BODY, "loader_code": "INVOICES", "lifecycle_state": "ACTIVE"})

    ref = _configuration(handler).create_direct("INVOICES", {"loader_sql": "SELECT 1"}, "alice")

    assert ref.lifecycle_state == "ACTIVE"


@pytest.mark.parametrize(
    "status_code, error_code, expected",
    [
        (409, "CONFLICT", ConflictError),
        (409, "INVALID_STATE", InvalidStateError),
        (409, None, ConflictError),
        (404, "NOT_FOUND", NotFoundError),
        (403, "NOT_AUTHORIZED", AuthorizationError),
        (401, None, AuthorizationError),
        (400, "INVALID_FILE", ValidationError),
        (422, None, ValidationError),
    ],
)
def test_error_responses_map_to_domain_errors(status_code: int, error_code, expected) -> None:
    headers = {"X-Error-Code": error_code} if error_code else {}
    client = _configuration(
        lambda request: httpx.Response(status_code, json={"detail": "Loader ORDERS v2 is PENDING"}, headers=headers)
    )

    with pytest.raises(expected) as excinfo:
        client.create_direct("ORDERS", {}, "alice")

    assert excinfo.value.message.endswith("Loader ORDERS v2 is PENDING")


def test_timeouts_and_unreachable_hosts_are_downstream_errors() -> None:
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def maintenance(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "maintenance"})

    with pytest.raises(DownstreamTimeoutError):
        _configuration(timeout).exists("ORDERS")
    with pytest.raises(DownstreamUnavailableError) as excinfo:
        _configuration(refused).exists("ORDERS")
    assert not isinstance(excinfo.value, DownstreamTimeoutError)
    with pytest.raises(DownstreamUnavailableError):
        _configuration(maintenance).exists("ORDERS")


def test_discard_draft_deletes_the_version() -> None:
    seen: list[tuple[str, str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, request.headers["X-Username"]))
        return httpx.Response(204)

    _configuration(handler).discard_draft(VERSION_BODY["id"], "alice")

    assert seen == [("DELETE", f"/api/loader-versions/{VERSION_BODY['id']}", "alice")]


def test_submit_change_returns_request_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path == "/api/approvals/submit"
        assert body["entity_type"] == "LOADER"
        assert body["source"] == "IMPORT"
        assert request.headers["X-Username"] == "alice"
        assert request.headers["Authorization"] == "Bearer xyz"
        return httpx.Response(201, json={"id": "req-1", "status": "PENDING"})

    client = HttpApprovalService("http://approvals.local", transport=httpx.MockTransport(handler))

    assert client.submit_change("LOADER", VERSION_BODY["id"], "alice", token="Bearer xyz") == "req-1"


def test_base_url_is_required() -> None:
    with pytest.raises(ValueError):
        HttpApprovalService("  ")
