# apps/workers/errors.py
#
# Error taxonomy shared by adapters, resolver, aggregator and the api.
#
#   NotFound                 terminal for that reference in the current pass
#   TransientUpstreamError   network / timeout / 429 / 5xx -> next adapter, next pass
#     CircuitOpen            breaker short-circuit (no network call was made)
#   QuotaExhausted           metered budget spent -> unmetered transports only
#   InvalidReference         malformed input, rejected before any network call
#   StorageError             redis read/write failure, fatal for the operation
#   RedirectConflict         redirect write would break monotonicity / form a cycle

from __future__ import annotations

from typing import Optional

__all__ = [
    "EngineError",
    "NotFound",
    "TransientUpstreamError",
    "CircuitOpen",
    "QuotaExhausted",
    "InvalidReference",
    "StorageError",
    "RedirectConflict",
]


class EngineError(Exception):
    """Base class for every error the engine raises on purpose."""

    def __init__(self, message: str = "", *, adapter: Optional[str] = None):
        super().__init__(message)
        self.adapter = adapter


class NotFound(EngineError):
    pass


class TransientUpstreamError(EngineError):
    pass


class CircuitOpen(TransientUpstreamError):
    pass


class QuotaExhausted(EngineError):
    pass


class InvalidReference(EngineError, ValueError):
    pass


class StorageError(EngineError):
    pass


class RedirectConflict(EngineError):
    pass
