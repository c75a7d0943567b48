"""
Remote Watch — Channel Error Taxonomy

  ChannelError        base for everything the transport can raise
  ├── RemoteError         the target answered {id, error}
  ├── CallTimeout         no answer before the per-call deadline
  ├── ChannelClosed       socket gone (pending calls are rejected with this)
  ├── TargetNotFound      discovery found no usable target on any port
  ├── ReconnectExhausted  bounded reconnection gave up (fatal)
  └── DispatchFailed      input could not be delivered to any context

QueryFailure is deliberately NOT a ChannelError: it never leaves
channel.query, where it is converted into the caller's fallback value.
"""

from __future__ import annotations

from typing import Any


class ChannelError(Exception):
    """Base class for transport-level failures."""
    pass


class RemoteError(ChannelError):
    """The target rejected the request."""

    def __init__(self, method: str, error: Any):
        self.method = method
        if isinstance(error, dict):
            self.code = error.get("code")
            self.remote_message = str(error.get("message", ""))
            self.data = error.get("data")
        else:
            self.code = None
            self.remote_message = str(error)
            self.data = None
        super().__init__(f"{method} failed: {self.remote_message} (code={self.code})")


class CallTimeout(ChannelError, TimeoutError):
    """Raised when a call outlives its deadline."""

    def __init__(self, method: str, timeout: float):
        self.method = method
        self.timeout = timeout
        super().__init__(f"Timeout calling {method} after {timeout:.1f}s")


class ChannelClosed(ChannelError):
    """The connection closed (or was never open) while a call was pending."""
    pass


class TargetNotFound(ChannelError):
    """Discovery scanned every candidate port without finding a target."""

    def __init__(self, ports: tuple[int, ...] | list[int], detail: str = ""):
        self.ports = tuple(ports)
        msg = f"No debuggable target found on ports {list(self.ports)}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ReconnectExhausted(ChannelError):
    """Automatic reconnection failed max_attempts times. Manual restart needed."""

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f" (last error: {last_error})" if last_error else ""
        super().__init__(f"Reconnection failed after {attempts} attempts{detail}")


class DispatchFailed(ChannelError):
    """Input injection did not succeed in any execution context."""

    def __init__(self, contexts_tried: int, detail: str = ""):
        self.contexts_tried = contexts_tried
        msg = f"Input injection failed in {contexts_tried} context(s)"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class QueryFailure(Exception):
    """A single observation failed. Absorbed by StateQuery."""
    pass
