"""Parley exceptions.

Contract violations are raised straight to the caller because they signal a
sequencing bug on the caller's side. Runtime failures (transport, agent
provider, hydration) are caught at the component boundaries and degrade to
a logged, user-visible state instead.
"""

from __future__ import annotations


class ParleyError(RuntimeError):
    """Base class for all parley errors."""


# -----------------------------------------------------------------------------
# Caller contract violations
# -----------------------------------------------------------------------------


class ContractViolation(ParleyError):
    """The caller sequenced engine operations incorrectly."""


class ViewTransitionInProgress(ContractViolation):
    def __init__(self) -> None:
        super().__init__(
            "A view change is already in progress; wait for it to settle before "
            "requesting another one."
        )


class AgentChatAlreadyActive(ContractViolation):
    def __init__(self) -> None:
        super().__init__(
            "An agent chat is already running. end_chat() must be called before "
            "a new chat can start."
        )


class AgentProviderError(ContractViolation):
    """Agent provider missing, invalid, or initialised twice."""


class ReadOnlyInputError(ContractViolation):
    def __init__(self) -> None:
        super().__init__("Messages cannot be sent while the input is read-only.")


# -----------------------------------------------------------------------------
# Runtime failures
# -----------------------------------------------------------------------------


class StreamAssemblyError(ParleyError):
    """A streamed chunk could not be merged into the store."""


class HydrationError(ParleyError):
    """The session bootstrap failed."""


class TransportError(ParleyError):
    """The assistant transport failed to deliver a request."""

    def __init__(self, message: str, *, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class TransportHTTPError(TransportError):
    """HTTP error returned by the assistant backend."""

    def __init__(
        self,
        status: int,
        *,
        method: str,
        url: str,
        detail: str | None = None,
    ):
        self.status = int(status)
        self.method = method
        self.url = url
        self.detail = detail
        super().__init__(self.__str__(), retryable=self.status >= 500)

    def __str__(self) -> str:
        detail = (self.detail or "").strip()
        if detail:
            return f"HTTP {self.status} {self.method} {self.url}: {detail}"
        return f"HTTP {self.status} {self.method} {self.url}"


class TransportProtocolError(TransportError):
    """Malformed data from the assistant backend."""

    def __init__(self, message: str, *, payload_preview: str | None = None):
        self.message = message
        self.payload_preview = payload_preview
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.payload_preview:
            return f"Protocol error: {self.message} (payload={self.payload_preview!r})"
        return f"Protocol error: {self.message}"


class MessageCancelled(TransportError):
    def __init__(self, message: str = "Message was cancelled"):
        super().__init__(message)


class EpochExpired(ParleyError):
    """A suspended continuation resumed after the session was restarted."""

    def __init__(self, captured: int, current: int):
        self.captured = captured
        self.current = current
        super().__init__(f"epoch {captured} expired (current epoch is {current})")
