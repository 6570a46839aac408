#!/usr/bin/env python3
"""
Exception taxonomy for the reorganizer.

Every error carries a stable ``code`` used in the run summary, plus an
optional ``path`` and ``cause`` so a failed album can be retried by hand.
"""

from typing import Any, Dict, Optional


class ReorganizerError(Exception):
    """Base class for all errors raised by the reorganizer"""

    code = "error"

    def __init__(self, message: str, path: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.path = str(path) if path is not None else None
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.code,
            "message": self.message,
            "path": self.path,
            "cause": repr(self.cause) if self.cause is not None else None
        }


class ConfigError(ReorganizerError):
    code = "config_error"


# ==================== Adapter errors ====================

class AdapterError(ReorganizerError):
    """Raised by external collaborators (catalog, tag codec, transcoder)"""
    code = "adapter_error"


class CatalogError(AdapterError):
    code = "catalog_error"


class RateLimitedError(CatalogError):
    code = "rate_limited"


class NotFoundError(CatalogError):
    code = "not_found"


class NetworkError(CatalogError):
    code = "network_error"


class TagCodecError(AdapterError):
    code = "tag_codec_error"


class TranscodeError(AdapterError):
    code = "transcode_error"


# ==================== Matching ====================

class MatchError(ReorganizerError):
    code = "match_error"


class NoCandidatesError(MatchError):
    code = "no_candidates"


class AmbiguousMatchError(MatchError):
    code = "ambiguous"

    def __init__(self, message: str, candidates=None, **kwargs):
        super().__init__(message, **kwargs)
        self.candidates = list(candidates or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["candidates"] = self.candidates
        return data


class CatalogUnavailableError(MatchError):
    code = "catalog_unavailable"


# ==================== Transactions ====================

class TransactionError(ReorganizerError):
    code = "transaction_error"


class PathCollisionError(TransactionError):
    code = "path_collision"


class TranscodeFailedError(TransactionError):
    code = "transcode_failed"


class TagWriteFailedError(TransactionError):
    code = "tag_write_failed"


class MoveFailedError(TransactionError):
    code = "move_failed"


class TransactionCancelledError(TransactionError):
    code = "cancelled"
