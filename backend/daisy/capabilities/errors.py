"""
Node execution errors.

Every failure while running a node is one of these. The dispatcher catches
them at its boundary and turns them into the node's displayed message, so
nothing here ever escapes to the graph or canvas level.
"""

from __future__ import annotations


class NodeExecutionError(Exception):
    """Base class for node-local execution failures."""

    category = "remote"
    title = "Error"
    hint: str | None = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def user_message(self) -> str:
        text = f"{self.title}\n\n{self.message}"
        if self.hint:
            text += f"\n\n{self.hint}"
        return text


class ConfigurationError(NodeExecutionError):
    """A required credential is missing. Raised before any network attempt."""

    category = "configuration"
    title = "Configuration Error"


class ValidationError(NodeExecutionError):
    """A required input (prompt, text) is empty after aggregation."""

    category = "validation"
    title = "Missing Input"


class AuthError(NodeExecutionError):
    category = "auth"
    title = "Authentication Error"
    hint = "Please check your API key in Settings."


class QuotaError(NodeExecutionError):
    category = "quota"
    title = "Quota Exceeded"
    hint = "Please check your billing and usage limits."


class PolicyError(NodeExecutionError):
    """The remote rejected the content on safety or policy grounds."""

    category = "policy"
    title = "Safety System Rejection"

    def __init__(self, message: str, suggestions: list[str] | None = None):
        super().__init__(message)
        self.suggestions = [s for s in (suggestions or []) if s]

    def user_message(self) -> str:
        text = f"{self.title}\n\n{self.message}"
        if self.suggestions:
            numbered = "\n".join(f"{i}. {s}" for i, s in enumerate(self.suggestions, 1))
            text += f"\n\nSuggestions:\n{numbered}"
        return text


class ConnectivityError(NodeExecutionError):
    """Transport-level failure: DNS, refused connection, dropped connection, timeout."""

    category = "connectivity"
    title = "Connection Error"
    hint = "Please check your internet connection and that the service is operational."


class RemoteError(NodeExecutionError):
    """Any other non-success response, carrying the remote message verbatim."""

    category = "remote"
    title = "Error"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RequestError(RemoteError):
    """The remote rejected the request as malformed (HTTP 400)."""

    category = "request"
    title = "Request Error"
    hint = "This might be due to an invalid prompt, an unsupported model or missing parameters."


class TaskTimeoutError(NodeExecutionError):
    """An asynchronous task did not finish within the allowed number of polls."""

    category = "timeout"
    title = "Timed Out"
