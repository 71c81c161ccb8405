"""
errors.py — failure taxonomy shared by the weather, FileX and batch steps.

Every failure is scoped to one entity (station or site). The per-entity loops
catch PipelineError (and OSError from file I/O), log it and record the message, so one bad site never
aborts the whole multi-site run.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures scoped to a single station or site."""


class LookupMissError(PipelineError, LookupError):
    """A station, site or template column has no match."""


class FieldFormatError(PipelineError, ValueError):
    """A value cannot be rendered in its fixed-width field."""


class EngineRunError(PipelineError, RuntimeError):
    """The DSSAT executable failed, timed out or produced no report."""


class ReportParseError(PipelineError, ValueError):
    """A DSSAT output report is truncated or malformed."""
