"""
HTTP client for the remote telemetry backend.

Each backend operation is a function endpoint: POST `{base_url}/{function}`
with a JSON body `{"publicKey", "clientSecretKey", "payload"}`. A non-2xx
response raises TelemetryExportError so the export queue can retry it.
"""

from typing import Any

import httpx
import structlog

logger = structlog.get_logger()

__all__ = [
    "TelemetryApiClient",
    "TelemetryExportError",
]


class TelemetryExportError(Exception):
    """The backend rejected or could not be reached for an export call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


class TelemetryApiClient:
    """Async client for the telemetry backend functions."""

    EXPORT_HISTORY = "export-agent-history"
    EXPORT_TIMELINE_EVENT = "export-timeline-event"
    EXPORT_STEPS = "export-history-steps"
    UPDATE_HISTORY = "update-agent-history"

    def __init__(
        self,
        base_url: str,
        public_key: str,
        secret_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Base URL of the function endpoints.
            public_key: Project public key.
            secret_key: Project secret key.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.public_key = public_key
        self._secret_key = secret_key
        self.log = logger.bind(component="telemetry_client", base_url=self.base_url)
        self._http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def _call(self, function: str, payload: dict[str, Any]) -> Any:
        """POST a payload to a backend function.

        Raises:
            TelemetryExportError: On transport errors or non-2xx responses.
        """
        url = f"{self.base_url}/{function}"
        body = {
            "publicKey": self.public_key,
            "clientSecretKey": self._secret_key,
            "payload": payload,
        }
        try:
            response = await self._http.post(url, json=body)
        except httpx.HTTPError as e:
            raise TelemetryExportError(f"Request to {function} failed: {e}") from e

        if response.is_error:
            raise TelemetryExportError(
                f"{function} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        self.log.debug("telemetry_client.ok", function=function, status=response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def export_history(self, payload: dict[str, Any]) -> Any:
        return await self._call(self.EXPORT_HISTORY, payload)

    async def export_timeline_event(self, payload: dict[str, Any]) -> Any:
        return await self._call(self.EXPORT_TIMELINE_EVENT, payload)

    async def export_steps(self, payload: dict[str, Any]) -> Any:
        return await self._call(self.EXPORT_STEPS, payload)

    async def update_history(self, payload: dict[str, Any]) -> Any:
        return await self._call(self.UPDATE_HISTORY, payload)

    async def aclose(self) -> None:
        await self._http.aclose()

    def __repr__(self) -> str:
        return f"<TelemetryApiClient(base_url='{self.base_url}')>"
