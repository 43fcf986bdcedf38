"""
Export Errors
=============

Exception hierarchy for the export engine.

- ConfigurationError: missing or invalid settings, raised before any connection
- SourceError: Redmine database unavailable or a query failed
- SinkError: warehouse write/query failed (the batch transaction is rolled back)
"""


class ExportError(Exception):
    """Base class for all export failures."""


class ConfigurationError(ExportError):
    """Required setting missing or invalid."""


class SourceError(ExportError):
    """Source database unavailable or query failure."""


class SinkError(ExportError):
    """Sink write or query failure."""
