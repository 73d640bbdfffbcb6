"""Error taxonomy shared by adapters, the scheduler and the command layer."""

from __future__ import annotations

import enum


class RelayError(Exception):
    """Base class for rss_relay errors."""


class FetchFailure(RelayError):
    """Raised when a feed cannot be fetched or parsed."""


class AuthFailure(RelayError):
    """Raised when a credential is missing, rejected or cannot be refreshed."""


class ConfigurationError(RelayError):
    """Raised when a required secret or setting is absent."""


class SendFailureKind(enum.Enum):
    FORBIDDEN = "forbidden"
    BAD_REQUEST = "bad_request"
    TRANSIENT = "transient"


class SendFailure(RelayError):
    """Raised by the outbound send primitive when a message is not delivered."""

    def __init__(self, kind: SendFailureKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind

    @property
    def should_evict(self) -> bool:
        return self.kind in (SendFailureKind.FORBIDDEN, SendFailureKind.BAD_REQUEST)
