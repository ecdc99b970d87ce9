from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pipelines.common.validate import ValidationReport


class DatahError(Exception):
    """Base class for every error raised by the indicator pipeline."""


class ConfigurationError(DatahError):
    """The mapping table is malformed or incomplete. Fatal to the whole run."""

    def __init__(self, message: str, *, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or []


class FetchError(DatahError):
    """Transport failure, non-success upstream status, or empty/malformed body."""

    def __init__(self, message: str, *, indicator_id: str | None = None, url: str | None = None):
        super().__init__(message)
        self.indicator_id = indicator_id
        self.url = url

    def for_indicator(self, indicator_id: str) -> "FetchError":
        if self.indicator_id is None:
            self.indicator_id = indicator_id
        return self

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.indicator_id:
            context.append(f"indicator={self.indicator_id}")
        if self.url:
            context.append(f"url={self.url}")
        if not context:
            return message
        return f"{message} ({', '.join(context)})"


class NoDataError(FetchError):
    """Upstream answered successfully but with zero usable rows."""


class ParseError(DatahError):
    def __init__(self, message: str, *, indicator_id: str | None = None):
        super().__init__(message)
        self.indicator_id = indicator_id

    def __str__(self) -> str:
        message = super().__str__()
        if self.indicator_id:
            return f"{message} (indicator={self.indicator_id})"
        return message


class NormalizationInvariantError(DatahError):
    """A normalized value escaped [0, 100]. Always a logic bug, never bad data."""

    def __init__(self, indicator_id: str, offending: dict[str, Any]):
        preview = dict(list(offending.items())[:5])
        super().__init__(
            f"Normalized values outside [0, 100] for indicator {indicator_id}: {preview}"
        )
        self.indicator_id = indicator_id
        self.offending = offending


class ValidationError(DatahError):
    """Aggregate of every post-hoc invariant violation found in the assembled output."""

    def __init__(self, report: "ValidationReport"):
        failures = report.failures
        lines = [f"{item.name}: {item.details}" for item in failures[:20]]
        if len(failures) > 20:
            lines.append(f"... and {len(failures) - 20} more")
        super().__init__(f"{len(failures)} validation failures:\n" + "\n".join(lines))
        self.report = report
