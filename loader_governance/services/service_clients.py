"""HTTP clients for remote configuration and approval services.

Both speak the REST API exposed by this application's own routers, so one
deployment can import into another. Transport failures and 5xx responses
become ``DownstreamUnavailableError``. Client errors are mapped from the
``X-Error-Code`` header the routers set, falling back to the status code.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx

from loader_governance.services.collaborators import ConfigurationRef
from loader_governance.services.errors import (
    ERROR_CODE_HEADER,
    AuthorizationError,
    ConflictError,
    DownstreamTimeoutError,
    DownstreamUnavailableError,
    InvalidStateError,
    LoaderGovernanceError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_ERRORS_BY_CODE: dict[str, type[LoaderGovernanceError]] = {
    error_type.error_code: error_type
    for error_type in (ValidationError, ConflictError, InvalidStateError, AuthorizationError, NotFoundError)
}
_ERRORS_BY_STATUS: dict[int, type[LoaderGovernanceError]] = {
    400: ValidationError,
    401: AuthorizationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
}


class _ServiceClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        service_name: str = "service",
    ) -> None:
        base_url = (base_url or "").strip()
        if not base_url:
            raise ValueError(f"A base URL is required to reach the {service_name}.")
        self._service_name = service_name
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=max(0.1, timeout_seconds),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _headers(self, *, user: Optional[str], token: Optional[str]) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if user:
            headers["X-Username"] = user
        if token:
            headers["Authorization"] = token if token.lower().startswith("bearer ") else f"Bearer {token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        user: Optional[str] = None,
        token: Optional[str] = None,
        json_payload: Optional[Mapping[str, Any]] = None,
    ) -> httpx.Response:
        try:
            response = self._client.request(
                method,
                path,
                headers=self._headers(user=user, token=token),
                json=dict(json_payload) if json_payload is not None else None,
            )
        except httpx.TimeoutException as exc:
            logger.warning("client:%s:timeout %s %s", self._service_name, method, path)
            raise DownstreamTimeoutError(f"{self._service_name} timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("client:%s:unreachable %s %s error=%s", self._service_name, method, path, exc)
            raise DownstreamUnavailableError(f"{self._service_name} is unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise DownstreamUnavailableError(
                f"{self._service_name} responded with {response.status_code} for {method} {path}"
            )
        return response

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, Mapping):
            detail = body.get("detail")
            if isinstance(detail, str):
                return detail
            if detail is not None:
                return str(detail)
        return str(body)

    def _raise_for_status(self, response: httpx.Response) -> None:
        status_code = response.status_code
        if status_code < 400:
            return
        detail = self._detail(response)
        error_type = _ERRORS_BY_CODE.get(response.headers.get(ERROR_CODE_HEADER, ""))
        if error_type is None:
            error_type = _ERRORS_BY_STATUS.get(status_code)
        if error_type is None:
            raise DownstreamUnavailableError(f"{self._service_name} responded with {status_code}: {detail}")
        raise error_type(detail)


class HttpConfigurationService(_ServiceClient):
    def __init__(self, base_url: str, **kwargs: Any) -> None:
        kwargs.setdefault("service_name", "configuration service")
        super().__init__(base_url, **kwargs)

    def exists(self, loader_code: str, *, token: Optional[str] = None) -> bool:
        response = self._request("GET", f"/api/loaders/{loader_code}/exists", token=token)
        self._raise_for_status(response)
        return bool(response.json().get("exists"))

    def has_working_copy(self, loader_code: str, *, token: Optional[str] = None) -> bool:
        response = self._request("GET", f"/api/loaders/{loader_code}/exists", token=token)
        self._raise_for_status(response)
        return bool(response.json().get("has_working_copy"))

    def create_direct(
        self,
        loader_code: str,
        payload: Mapping[str, Any],
        author: str,
        *,
        token: Optional[str] = None,
        import_label: Optional[str] = None,
    ) -> ConfigurationRef:
        body = dict(payload)
        body.update(loader_code=loader_code, change_type="IMPORT_CREATE", import_label=import_label)
        response = self._request("POST", "/api/loaders", user=author, token=token, json_payload=body)
        self._raise_for_status(response)
        return self._ref(response.json())

    def create_draft(
        self,
        loader_code: str,
        changes: Mapping[str, Any],
        author: str,
        *,
        token: Optional[str] = None,
        import_label: Optional[str] = None,
        change_type: str = "IMPORT_UPDATE",
    ) -> ConfigurationRef:
        body = dict(changes)
        body.update(change_type=change_type, import_label=import_label)
        response = self._request(
            "POST",
            f"/api/loaders/{loader_code}/drafts",
            user=author,
            token=token,
            json_payload=body,
        )
        self._raise_for_status(response)
        return self._ref(response.json())

    def discard_draft(self, version_id: str, actor: str, *, token: Optional[str] = None) -> None:
        response = self._request("DELETE", f"/api/loader-versions/{version_id}", user=actor, token=token)
        self._raise_for_status(response)

    @staticmethod
    def _ref(body: Mapping[str, Any]) -> ConfigurationRef:
        return ConfigurationRef(
            version_id=str(body["id"]),
            loader_code=body["loader_code"],
            version_number=int(body["version_number"]),
            lifecycle_state=body["lifecycle_state"],
        )


class HttpApprovalService(_ServiceClient):
    def __init__(self, base_url: str, **kwargs: Any) -> None:
        kwargs.setdefault("service_name", "approval service")
        super().__init__(base_url, **kwargs)

    def submit_change(
        self,
        entity_type: str,
        entity_id: str,
        submitter: str,
        *,
        token: Optional[str] = None,
        source: str = "IMPORT",
        import_label: Optional[str] = None,
        change_summary: Optional[str] = None,
    ) -> str:
        body = {
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "source": source,
            "import_label": import_label,
            "change_summary": change_summary,
        }
        response = self._request("POST", "/api/approvals/submit", user=submitter, token=token, json_payload=body)
        self._raise_for_status(response)
        return str(response.json()["id"])


__all__ = ["HttpApprovalService", "HttpConfigurationService"]
