"""Abstract base and typed failures for structured-output reasoner backends."""

from abc import ABC, abstractmethod


class ReasonerError(Exception):
    """Base class for every failure crossing the reasoner boundary."""


class ReasonerTimeout(ReasonerError):
    """Raised when a reasoner call is aborted past its deadline."""

    def __init__(self, timeout_sec: float) -> None:
        self.timeout_sec = timeout_sec
        super().__init__(f"Reasoner call timed out after {timeout_sec:g}s")


class ReasonerHttpError(ReasonerError):
    """Raised when the reasoner API answers with a non-success status.

    ``status`` is None when the request never got a response (connection
    refused, DNS failure, and so on).
    """

    def __init__(self, status: int | None, message: str) -> None:
        self.status = status
        self.message = message
        label = f"HTTP {status}" if status is not None else "connection error"
        super().__init__(f"Reasoner API failed ({label}): {message}")


class ReasonerMalformedOutput(ReasonerError):
    """Raised when both attempts fail to yield a JSON object."""

    def __init__(self, raw_text: str) -> None:
        self.raw_text = raw_text
        preview = raw_text.strip().replace("\n", " ")[:120]
        super().__init__(f"Reasoner returned malformed JSON: {preview!r}")


class ReasonerBackend(ABC):
    """One model endpoint able to answer a system/user prompt pair with text."""

    @abstractmethod
    def name(self) -> str:
        """Return the short backend name (e.g. 'anthropic')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        """Return the raw text of the model's reply.

        Raises:
            ReasonerHttpError: On a non-success API response or transport failure.
            ReasonerTimeout: When the SDK itself reports a timeout.
        """
        ...
