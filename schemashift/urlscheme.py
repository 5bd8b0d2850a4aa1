"""Extract the scheme part of a driver URL."""

from __future__ import annotations

__all__ = ["EmptyURLError", "NoSchemeError", "scheme_from_url"]


class EmptyURLError(ValueError):
    """Raised when an empty URL is given."""

    def __init__(self) -> None:
        super().__init__("URL cannot be empty")


class NoSchemeError(ValueError):
    """Raised when a URL has no scheme before its first colon."""

    def __init__(self) -> None:
        super().__init__("no scheme")


def scheme_from_url(url: str) -> str:
    """Return the scheme of ``url``: everything before the first colon."""
    if not url:
        raise EmptyURLError()
    scheme, sep, _ = url.partition(":")
    if not sep or not scheme:
        raise NoSchemeError()
    return scheme