from __future__ import annotations

from typing import TYPE_CHECKING, List, Sequence

if TYPE_CHECKING:
    from .schemas import Violation

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_NOOP = 2
EXIT_CONFLICT = 3
EXIT_NOT_FOUND = 4
EXIT_IO = 5


class TaskVaultError(Exception):
    exit_code = EXIT_VALIDATION

    def details(self) -> List[str]:
        return [str(self)]


class ParseError(TaskVaultError):
    def __init__(self, line: int, reason: str, source: str = "") -> None:
        location = f"{source}:{line}" if source else f"line {line}"
        super().__init__(f"{location}: {reason}")
        self.line = line
        self.reason = reason
        self.source = source


class ValidationError(TaskVaultError):
    def __init__(self, violations: Sequence["Violation"], message: str = "") -> None:
        self.violations = list(violations)
        super().__init__(message or f"{len(self.violations)} violation(s)")

    def details(self) -> List[str]:
        return [violation.atom() for violation in self.violations]


class ImmutabilityViolation(ValidationError):
    def __init__(self, violations: Sequence["Violation"]) -> None:
        super().__init__(violations, "completed archive was edited retroactively")


class NotFoundError(TaskVaultError):
    exit_code = EXIT_NOT_FOUND


class ConflictError(TaskVaultError):
    exit_code = EXIT_CONFLICT

    def __init__(self, attempts: int) -> None:
        super().__init__(f"snapshot stayed stale after {attempts} attempt(s)")
        self.attempts = attempts


class PersistenceError(TaskVaultError):
    exit_code = EXIT_IO


class StaleSnapshotError(TaskVaultError):
    exit_code = EXIT_CONFLICT
