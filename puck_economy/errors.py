"""Error taxonomy for puck-economy.

Infrastructure and boundary failures are raised as ``EconomyError``
subclasses; each carries an ``ErrorKind`` so the HTTP layer maps failures to
status codes by kind rather than by message text. Business outcomes of the
purchase and reward flows are returned as result enums instead (see
``transaction_engine``).
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    CONFIG = "config"
    NOT_FOUND_OR_CONFLICT = "not_found_or_conflict"
    DISPATCH = "dispatch"
    LEDGER = "ledger"

    @property
    def http_status(self) -> int:
        return _STATUS_BY_KIND[self]


_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTH: 401,
    ErrorKind.CONFIG: 500,
    ErrorKind.NOT_FOUND_OR_CONFLICT: 409,
    ErrorKind.DISPATCH: 502,
    ErrorKind.LEDGER: 500,
}


class EconomyError(Exception):
    """Base class for all service errors."""

    kind: ErrorKind = ErrorKind.LEDGER

    def __init__(self, message: str, code: str | None = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        super().__init__(message)

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(EconomyError):
    """Malformed or missing request fields."""

    kind = ErrorKind.VALIDATION


class AuthError(EconomyError):
    """Missing or invalid extension token, platform token or trust hash."""

    kind = ErrorKind.AUTH


class ConfigError(EconomyError):
    """Server misconfiguration, or an identity check that could not complete."""

    kind = ErrorKind.CONFIG


class ConflictError(EconomyError):
    """Unknown referenced entity or an already-applied operation."""

    kind = ErrorKind.NOT_FOUND_OR_CONFLICT


class DispatchError(EconomyError):
    """Outbound notification transport failure."""

    kind = ErrorKind.DISPATCH


class LedgerError(EconomyError):
    """Persistence read/write failure. Always surfaced, never dropped."""

    kind = ErrorKind.LEDGER
