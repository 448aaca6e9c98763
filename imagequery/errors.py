"""Error taxonomy for the conversation engine."""
from __future__ import annotations

from enum import Enum
from typing import Iterable, List


class FailureKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"
    CANCELLED = "cancelled"


class AdapterError(Exception):
    """Raised inside an adapter request; converted to a failed result by the adapter."""

    def __init__(self, kind: FailureKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class DispatchFailure(Exception):
    """Raised when a turn produced no usable response."""
    pass


class NoCapableAdapter(DispatchFailure):
    """Raised when no adapter can serve the turn (e.g. images on a text-only model)."""
    pass


class AllAdaptersFailed(DispatchFailure):
    """Raised when every queried adapter returned a failure."""

    def __init__(self, results: Iterable) -> None:
        self.results: List = list(results)
        super().__init__(self.describe())

    def describe(self) -> str:
        reasons = [f"{r.adapter_id}: {r.describe_failure()}" for r in self.results]
        return "All models failed (" + "; ".join(reasons) + ")" if reasons else "All models failed"


class DispatchTimeout(AllAdaptersFailed):
    """Raised when the turn deadline passed before any adapter succeeded."""

    def __init__(self, results: Iterable, deadline: float) -> None:
        self.deadline = deadline
        super().__init__(results)

    def describe(self) -> str:
        base = f"Timed out after {self.deadline:g}s with no response"
        if not self.results:
            return base
        reasons = [f"{r.adapter_id}: {r.describe_failure()}" for r in self.results]
        return base + " (" + "; ".join(reasons) + ")"


class StoreFailure(Exception):
    pass


class StoreWriteError(StoreFailure):
    pass


class NotFound(StoreFailure):
    pass


class ControllerBusy(Exception):
    """Raised synchronously when a turn is already in flight for the session."""
    pass


class InvalidOperation(Exception):
    """Raised when retry/edit preconditions are not met."""
    pass
