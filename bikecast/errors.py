"""
Failure types raised while turning a raw rental file into a prepared dataset.

Fatal conditions are exceptions. Rows dropped for being malformed are not:
they are tallied in ``SkippedRows`` so the loader can report them.
"""

from dataclasses import dataclass


class PipelineError(Exception):
    """Base class for fatal data-pipeline failures."""


class ParseError(PipelineError):
    """The input could not be read at all."""


class EmptyDatasetError(PipelineError, ValueError):
    """No usable rows survived, or too few to build a single window."""


@dataclass
class SkippedRows:
    field_count: int = 0     # field count differs from the header
    invalid_value: int = 0   # non-finite number, bad date/hour, negative label

    @property
    def total(self) -> int:
        return self.field_count + self.invalid_value

    def as_dict(self):
        return {
            "field_count": self.field_count,
            "invalid_value": self.invalid_value,
            "total": self.total,
        }
