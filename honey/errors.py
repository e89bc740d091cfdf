from __future__ import annotations


class HoneyError(RuntimeError):
    pass


class ValidationError(HoneyError):
    """Bad or missing caller input. Never retried, surfaced as 400."""


class StorageUnavailableError(HoneyError):
    """A storage tier failed its startup probe."""


class WriteError(HoneyError):
    pass


class ReadError(HoneyError):
    pass


class SearchUnavailableError(HoneyError):
    """The active tier has no full-text index."""


class ParseError(HoneyError):
    """A transcript record could not be decoded."""
