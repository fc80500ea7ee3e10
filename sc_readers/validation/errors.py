from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from sc_readers.core.exceptions import ConfigError


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str


class ValidationError(ConfigError):
    """
    Every problem found in one pass over a config entry or an option set.
    """

    def __init__(self, issues: Sequence[ValidationIssue]):
        if not issues:
            raise ValueError("a ValidationError needs at least one issue")
        self.issues = list(issues)
        super().__init__("\n".join(f"{i.code}: {i.message}" for i in self.issues))

    @property
    def codes(self) -> List[str]:
        return [i.code for i in self.issues]
