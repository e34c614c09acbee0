from __future__ import annotations


class MalformedArchive(ValueError):
    """The archive holds no recognizable workflow document."""


class AuditResultError(RuntimeError):
    """An assembled audit result violated its own contract."""


class DetectorError(RuntimeError):
    """A detector produced a non-finite or negative financial figure."""
