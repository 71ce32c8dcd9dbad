"""
Explicit result values returned by provider adapters

Adapters never raise for provider outcomes. The orchestrator inspects ErrorKind to
decide whether a failed call is retried (TRANSIENT) or fails its step (VALIDATION, TERMINAL).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    VALIDATION = "VALIDATION"   # bad input, rejected before calling the provider
    TRANSIENT = "TRANSIENT"     # timeouts, transport errors, 5xx, rate limits
    TERMINAL = "TERMINAL"       # business rejection by the provider


@dataclass(frozen=True)
class ProviderError:
    kind: ErrorKind
    code: Optional[str]
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


@dataclass(frozen=True)
class ProviderResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ProviderError] = None

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None) -> 'ProviderResult':
        return cls(True, data or {})

    @classmethod
    def fail(cls, kind: ErrorKind, code: Optional[str], message: str) -> 'ProviderResult':
        return cls(False, {}, ProviderError(kind, code, message))

    @property
    def reference(self) -> Optional[str]:
        """Provider-assigned identifier for the created resource"""
        value = self.data.get('reference')
        return str(value) if value is not None else None

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable


def classify_http_status(status_code: int) -> ErrorKind:
    """Rate limits and server errors are worth retrying, other HTTP errors are not"""
    if status_code == 429 or status_code >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.TERMINAL
