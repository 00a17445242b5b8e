"""
Best-effort update status reporting to the KinuxOTA backend.

Each status change of a transaction is posted to
``{serverUrl}/api/device/update-status`` with the device API key in the
``X-API-Key`` header. Reporting never influences the update itself: every
failure (missing credentials, transport error, unexpected response) is
logged and swallowed.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

import httpx
from pydantic import BaseModel, ConfigDict, Field

from kinuxota_executor.config import load_device_credentials
from kinuxota_executor.logging import get_logger

if TYPE_CHECKING:
    from kinuxota_executor.config import DeviceCredentials, ReportingConfig

logger = get_logger(__name__)

# Substring of the backend's response body that acknowledges a report
ACK_MARKER = "success"


class UpdateStatus(str, Enum):
    """Status of an update transaction as seen by the backend."""

    PENDING = "PENDING"
    UPDATING = "UPDATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        """True for the two statuses that end a transaction."""
        return self in (UpdateStatus.COMPLETED, UpdateStatus.FAILED)


class StatusEvent(BaseModel):
    """
    One status report, serialized as the webhook body.

    ``model_dump(by_alias=True)`` yields
    ``{"version", "status", "message", "isComplete"}``.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    version: str
    status: UpdateStatus
    message: str
    is_complete: bool = Field(alias="isComplete")

    @classmethod
    def build(cls, version: str, status: UpdateStatus, message: str) -> StatusEvent:
        """Create an event, deriving isComplete from the status."""
        return cls(
            version=version,
            status=status,
            message=message,
            is_complete=status.is_terminal,
        )

    def to_payload(self) -> dict[str, str | bool]:
        """Return the JSON body expected by the backend."""
        return self.model_dump(by_alias=True, mode="json")


class StatusReporter:
    """
    Posts status events to the backend.

    Credentials are resolved once, when the reporter is built for a
    transaction, and reused for every report of that transaction.

    Example:
        >>> reporter = StatusReporter.from_config(config.reporting)
        >>> await reporter.report("2.3.0", UpdateStatus.UPDATING, "Binary replaced")
    """

    def __init__(
        self,
        credentials: DeviceCredentials | None,
        endpoint_path: str = "/api/device/update-status",
        timeout_seconds: float = 10.0,
    ) -> None:
        """
        Initialize the reporter.

        Args:
            credentials: API key and server URL; None disables reporting.
            endpoint_path: Status endpoint path on the backend.
            timeout_seconds: HTTP request timeout.
        """
        self._credentials = credentials
        self._endpoint_path = "/" + endpoint_path.lstrip("/")
        self._timeout = timeout_seconds

    @classmethod
    def from_config(cls, config: ReportingConfig) -> StatusReporter:
        """
        Create a StatusReporter, reading device credentials from disk.

        Args:
            config: ReportingConfig with candidate credential paths.

        Returns:
            Configured StatusReporter (possibly without credentials).
        """
        return cls(
            credentials=load_device_credentials(config.credential_paths),
            endpoint_path=config.endpoint_path,
            timeout_seconds=config.timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        """Whether credentials are available."""
        return self._credentials is not None

    @property
    def url(self) -> str | None:
        """Full status endpoint URL, or None without credentials."""
        if self._credentials is None:
            return None
        return f"{self._credentials.server_url}{self._endpoint_path}"

    async def report(self, version: str, status: UpdateStatus, message: str) -> bool:
        """
        Send one status event.

        Args:
            version: Target version of the transaction.
            status: Status to report.
            message: Free-text progress message.

        Returns:
            True if the backend acknowledged the report, False otherwise.
            Never raises.
        """
        return await self.send(StatusEvent.build(version, status, message))

    async def send(self, event: StatusEvent) -> bool:
        """
        Post an already-built event.

        Returns:
            True if the backend acknowledged the report, False otherwise.
        """
        logger.info(
            f"Sending update status to backend: {event.status.value} - {event.message}",
            extra={"version": event.version, "status": event.status.value},
        )

        if self._credentials is None:
            logger.warning("Device credentials unavailable, status not sent")
            return False

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    self.url,
                    json=event.to_payload(),
                    headers={"X-API-Key": self._credentials.api_key},
                )
                body = response.text
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeError) as e:
            # InvalidURL and UnicodeError come from a malformed serverUrl or apiKey
            logger.warning(f"Failed to send update status to backend: {e}")
            return False

        if ACK_MARKER in body:
            logger.debug("Successfully sent update status to backend")
            return True

        logger.warning(
            f"Failed to send update status to backend. Response: {body}",
            extra={"status_code": response.status_code},
        )
        return False
