"""HTTP client for the MineTrack operations API."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests

from .schemas import Activity, Equipment, Material, Operation, OperationStartRequest, OperationStopRequest, User

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Request timeout - server is not responding"


class ApiError(RuntimeError):
    """Error while talking to the API."""

    def __init__(self, message: str, *, response: Optional[requests.Response] = None) -> None:
        super().__init__(message)
        self.response = response

    @property
    def status_code(self) -> Optional[int]:
        return self.response.status_code if self.response is not None else None


class TransientNetworkError(ApiError):
    """The request never got an answer; retrying later may succeed."""


class RequestTimeoutError(TransientNetworkError):
    """The request exceeded the configured timeout."""


class NetworkError(TransientNetworkError):
    """The connection could not be established or broke mid-request."""


class ServerRejectedError(ApiError):
    """The server answered with a 4xx (or an explicit ``success: false``)."""


class ServerError(ApiError):
    """The server answered with a 5xx."""


class ApiClient:
    """Wraps HTTP calls to the operations API."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.token = token
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        url = urljoin(self.base_url, path.lstrip("/"))
        kwargs.setdefault("timeout", self.timeout)
        headers = kwargs.setdefault("headers", {})
        headers.update(self._headers())
        try:
            response = requests.request(method, url, **kwargs)
        except requests.Timeout as exc:
            logger.warning("%s %s timed out after %ss", method, path, kwargs["timeout"])
            raise RequestTimeoutError(TIMEOUT_MESSAGE) from exc
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise NetworkError(str(exc) or "Network request failed") from exc

        if response.status_code >= 400:
            message = self._error_message(response)
            if response.status_code >= 500:
                raise ServerError(message, response=response)
            raise ServerRejectedError(message, response=response)
        return response

    def _request(self, method: str, path: str, **kwargs) -> Any:
        response = self._send(method, path, **kwargs)
        if not response.headers.get("Content-Type", "").startswith("application/json"):
            return response.content
        body = response.json()
        if isinstance(body, dict) and "success" in body:
            if not body.get("success"):
                raise ServerRejectedError(
                    body.get("error") or body.get("message") or "Request was not successful",
                    response=response,
                )
            return body.get("data")
        return body

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            detail = body.get("error") or body.get("message")
            if detail:
                return str(detail)
        return f"HTTP error! status: {response.status_code}"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    def login(self, email: str, password: str) -> tuple[str, User]:
        data = self._request("POST", "/auth/login", json={"email": email, "password": password}) or {}
        return self._parse_auth(data)

    def register(self, name: str, email: str, password: str) -> tuple[str, User]:
        payload = {"name": name, "email": email, "password": password}
        data = self._request("POST", "/auth/register", json=payload) or {}
        return self._parse_auth(data)

    @staticmethod
    def _parse_auth(data: Dict[str, Any]) -> tuple[str, User]:
        token = data.get("token")
        if not token or not data.get("user"):
            raise ServerRejectedError("Authentication response is missing token or user")
        return token, User.model_validate(data["user"])

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------
    def list_equipment(self) -> list[Equipment]:
        return [Equipment.model_validate(item) for item in self._request("GET", "/equipment") or []]

    def list_activities(self) -> list[Activity]:
        return [Activity.model_validate(item) for item in self._request("GET", "/activities") or []]

    def list_materials(self) -> list[Material]:
        return [Material.model_validate(item) for item in self._request("GET", "/materials") or []]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def start_operation(self, request: OperationStartRequest) -> Operation:
        data = self._request("POST", "/operations/start", json=request.to_wire())
        if not data:
            raise ServerRejectedError("Start response did not contain an operation")
        return Operation.model_validate(data)

    def stop_operation(self, operation_id: str, distance: Optional[float] = None) -> Optional[Operation]:
        payload = OperationStopRequest(distance=distance).to_wire()
        data = self._request("POST", f"/operations/{operation_id}/stop", json=payload)
        return Operation.model_validate(data) if isinstance(data, dict) else None

    def get_current_operation(self) -> Optional[Operation]:
        data = self._request("GET", "/operations/current")
        return Operation.model_validate(data) if data else None

    def list_operations(self) -> list[Operation]:
        return [Operation.model_validate(item) for item in self._request("GET", "/operations") or []]

    def update_operation_details(self, operation_id: str, activity_details: str) -> Optional[Operation]:
        data = self._request("PUT", f"/operations/{operation_id}", json={"activityDetails": activity_details})
        return Operation.model_validate(data) if isinstance(data, dict) else None

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------
    def daily_report(self, **params: Any) -> Any:
        return self._request("GET", "/reports/daily", params=params or None)

    def performance_report(self, **params: Any) -> Any:
        return self._request("GET", "/reports/performance", params=params or None)

    def export_excel(self, **params: Any) -> bytes:
        return self._send("GET", "/reports/export/excel", params=params or None).content


__all__ = [
    "ApiClient",
    "ApiError",
    "NetworkError",
    "RequestTimeoutError",
    "ServerError",
    "ServerRejectedError",
    "TransientNetworkError",
]
