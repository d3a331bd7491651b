"""Result values returned by command handlers.

Handlers return ``Ok`` for success and ``Err`` for expected failures
(missing object, user declined, unsafe verdict).  The command adapter
maps results to process exit codes with ``exit_code``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrKind(str, Enum):
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"
    VALIDATION = "validation"
    UNSAFE = "unsafe"
    FAILED = "failed"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Ok:
    value: Any = None
    message: str = ""

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrKind
    message: str
    suggestions: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return False


Result = Ok | Err


def exit_code(result: "Result | bool | None") -> int:
    """Translate a handler outcome into a process exit code.

    ``Ok`` or a truthy value → 0, ``Err(CRITICAL)`` → 2, anything else → 1.
    """
    if isinstance(result, Err):
        return 2 if result.kind is ErrKind.CRITICAL else 1
    return 0 if result else 1
