"""Task identifiers.

A task is addressed either by a positive integer (top-level task) or by a
dotted ``"parent.child"`` pair (subtask). Every place that compares or
looks up identifiers goes through :func:`parse_task_id`.
"""

from dataclasses import dataclass
from typing import Any, Optional, Union

# Bare integers below this value inside a subtask's dependency list are the
# historical shorthand for "sibling subtask N of the same parent".
SUBTASK_SHORTHAND_LIMIT = 100


@dataclass(frozen=True, order=True)
class TopLevel:
    id: int

    def __str__(self) -> str:
        return str(self.id)

    @property
    def parent(self) -> Optional[int]:
        return None

    def to_json(self) -> int:
        return self.id


@dataclass(frozen=True, order=True)
class Sub:
    parent_id: int
    id: int

    def __str__(self) -> str:
        return f"{self.parent_id}.{self.id}"

    @property
    def parent(self) -> Optional[int]:
        return self.parent_id

    def to_json(self) -> str:
        return str(self)


TaskId = Union[TopLevel, Sub]


def _positive_int(value: Any, raw: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid task id: {raw!r}") from None
    if number <= 0:
        raise ValueError(f"Invalid task id: {raw!r}")
    return number


def parse_task_id(value: Any, sibling_of: Optional[int] = None) -> TaskId:
    """Normalize any accepted identifier form to a :data:`TaskId`.

    Args:
        value: int, ``"7"``, ``"7.2"`` or an existing TaskId
        sibling_of: parent id when ``value`` comes from a subtask's
            dependency list; bare integers (not numeric strings) below
            ``SUBTASK_SHORTHAND_LIMIT`` are then read as sibling subtask
            references

    Raises:
        ValueError: when the value cannot be read as an identifier
    """
    if isinstance(value, (TopLevel, Sub)):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid task id: {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"Invalid task id: {value!r}")
        value = int(value)
    if isinstance(value, int):
        number = _positive_int(value, value)
        if sibling_of is not None and number < SUBTASK_SHORTHAND_LIMIT:
            return Sub(sibling_of, number)
        return TopLevel(number)
    if isinstance(value, str):
        token = value.strip()
        if "." in token:
            parent_raw, _, child_raw = token.partition(".")
            if "." in child_raw:
                raise ValueError(f"Invalid task id: {value!r}")
            return Sub(_positive_int(parent_raw, value), _positive_int(child_raw, value))
        return TopLevel(_positive_int(token, value))
    raise ValueError(f"Invalid task id: {value!r}")


def try_parse_task_id(value: Any, sibling_of: Optional[int] = None) -> Optional[TaskId]:
    try:
        return parse_task_id(value, sibling_of)
    except ValueError:
        return None


def task_id_key(value: TaskId) -> tuple:
    """Stable sort key: parents before their subtasks, numeric order."""
    if isinstance(value, Sub):
        return (value.parent_id, value.id)
    return (value.id, 0)


__all__ = [
    "SUBTASK_SHORTHAND_LIMIT",
    "TopLevel",
    "Sub",
    "TaskId",
    "parse_task_id",
    "try_parse_task_id",
    "task_id_key",
]
