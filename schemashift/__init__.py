"""Versioned database schema migrations run through pluggable source and database drivers."""

__version__ = "4.0.0"
__all__ = ["cli", "commands", "migrate", "migration", "urlscheme"]