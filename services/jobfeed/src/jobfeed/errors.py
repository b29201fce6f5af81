from __future__ import annotations

from typing import Any


class WorkdayError(Exception):
    """Base error for everything that can go wrong while serving the job feed.

    ``details`` must stay JSON serializable; it is returned to callers as-is.
    """

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(WorkdayError):
    """Required Workday settings are missing or invalid."""

    def __init__(self, message: str, variables: list[str] | None = None) -> None:
        self.variables = list(variables or [])
        super().__init__(message, details=self.variables or None)


class UpstreamAuthError(WorkdayError):
    """The OAuth token endpoint answered with a non-success status."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(
            "Failed to get Workday access token",
            details={"status": status_code, "body": body},
        )


class MalformedAuthResponse(WorkdayError):
    """The token exchange succeeded but carried no usable access_token."""

    def __init__(self, payload: Any) -> None:
        self.payload = payload
        super().__init__("No access_token in Workday token response", details=payload)


class UpstreamRequestError(WorkdayError):
    """A Workday call failed: non-success status, network error or timeout."""

    def __init__(
        self,
        status_code: int | None,
        body: str,
        *,
        message: str = "Failed to fetch Workday jobs",
    ) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(
            message,
            details={"status": status_code, "body": body},
        )


class MalformedResponseBody(WorkdayError):
    def __init__(self, body: str) -> None:
        self.body = body
        super().__init__("Invalid JSON from Workday jobs endpoint", details={"body": body})
