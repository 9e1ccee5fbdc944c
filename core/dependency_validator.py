"""Dependency graph validation and repair.

Pure domain logic for task/subtask dependency graphs.
No I/O operations - receives task data as parameters and never mutates it.

Nodes are every top-level task id and every dotted subtask id. Edges come
from each record's ``dependencies`` list after normalization through
:func:`core.task_id.parse_task_id` (bare integers in a subtask list are the
sibling shorthand).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .models import Subtask, Task
from .task_id import Sub, TaskId, TopLevel, try_parse_task_id

ISSUE_MISSING = "missing"
ISSUE_SELF = "self"
ISSUE_DUPLICATE = "duplicate"
ISSUE_CIRCULAR = "circular"

# Issue kinds that make a write unacceptable.
BLOCKING_ISSUES = frozenset({ISSUE_MISSING, ISSUE_SELF, ISSUE_CIRCULAR})


@dataclass(frozen=True)
class DependencyIssue:
    """Represents a dependency validation finding."""

    task_id: str
    dependency_id: str
    issue_type: str  # "missing", "self", "duplicate", "circular"
    message: str
    cycle: Tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"{self.task_id}: {self.issue_type} - {self.message}"

    def key(self) -> Tuple[Any, ...]:
        if self.issue_type == ISSUE_CIRCULAR:
            return (self.issue_type, frozenset(self.cycle))
        return (self.issue_type, self.task_id, self.dependency_id)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.issue_type,
            "taskId": self.task_id,
            "dependencyId": self.dependency_id,
            "message": self.message,
        }
        if self.cycle:
            data["cycle"] = list(self.cycle)
        return data


@dataclass
class ValidationReport:
    valid: bool
    issues: List[DependencyIssue] = field(default_factory=list)

    def by_type(self, issue_type: str) -> List[DependencyIssue]:
        return [i for i in self.issues if i.issue_type == issue_type]

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "issues": [i.to_dict() for i in self.issues]}


@dataclass
class RepairStats:
    duplicates_removed: int = 0
    missing_removed: int = 0
    self_removed: int = 0
    cycles_broken: int = 0
    independent_subtasks_restored: int = 0
    tasks_fixed: int = 0
    subtasks_fixed: int = 0

    @property
    def total(self) -> int:
        return (
            self.duplicates_removed
            + self.missing_removed
            + self.self_removed
            + self.cycles_broken
            + self.independent_subtasks_restored
        )


@dataclass
class RepairResult:
    tasks: List[Task]
    stats: RepairStats

    @property
    def changed(self) -> bool:
        return self.stats.total > 0


def iter_records(tasks: Iterable[Task]) -> Iterator[Any]:
    """Yield tasks and subtasks in stable document order."""
    for task in tasks:
        yield task
        for sub in task.subtasks:
            yield sub


def _sibling_scope(record: Any) -> Optional[int]:
    return record.parent_id if isinstance(record, Subtask) else None


def normalize_dependency(record: Any, raw: Any) -> Optional[TaskId]:
    """Normalize one dependency value of ``record``; None when unreadable."""
    return try_parse_task_id(raw, sibling_of=_sibling_scope(record))


def collect_node_ids(tasks: Iterable[Task]) -> Set[TaskId]:
    return {record.task_id for record in iter_records(tasks)}


def build_dependency_graph(tasks: List[Task]) -> Dict[TaskId, List[TaskId]]:
    """Build the normalized graph {node: [existing, non-self targets]}.

    Dangling and self edges are left out; duplicates are collapsed.
    """
    nodes = collect_node_ids(tasks)
    graph: Dict[TaskId, List[TaskId]] = {}
    for record in iter_records(tasks):
        source = record.task_id
        targets: List[TaskId] = []
        for raw in record.dependencies:
            target = normalize_dependency(record, raw)
            if target is None or target not in nodes or target == source or target in targets:
                continue
            targets.append(target)
        graph[source] = targets
    return graph


def find_cycles(graph: Dict[TaskId, List[TaskId]]) -> List[Tuple[List[TaskId], Tuple[TaskId, TaskId]]]:
    """Find back-edges with DFS and a recursion stack.

    Returns a list of (cycle_path, back_edge). ``cycle_path`` starts at the
    node the back-edge points to; ``back_edge`` is (source, target) where the
    source is the node that last entered the recursion stack.
    """
    visited: Set[TaskId] = set()
    rec_stack: Set[TaskId] = set()
    path: List[TaskId] = []
    found: List[Tuple[List[TaskId], Tuple[TaskId, TaskId]]] = []

    def enter(node: TaskId) -> Tuple[TaskId, Iterator[TaskId]]:
        visited.add(node)
        rec_stack.add(node)
        path.append(node)
        return node, iter(graph.get(node, []))

    for start in graph:
        if start in visited:
            continue
        # explicit stack of (node, remaining neighbors) so deep chains do not hit the recursion limit
        stack = [enter(start)]
        while stack:
            node, neighbors = stack[-1]
            for neighbor in neighbors:
                if neighbor not in visited:
                    stack.append(enter(neighbor))
                    break
                if neighbor in rec_stack:
                    cycle_start = path.index(neighbor)
                    found.append((path[cycle_start:], (node, neighbor)))
            else:
                stack.pop()
                path.pop()
                rec_stack.remove(node)
    return found


def validate_dependencies(tasks: List[Task]) -> ValidationReport:
    """Report missing, self, duplicate and circular dependencies.

    Detection order: dangling references, self-dependencies, duplicates,
    then cycles over the remaining edges.
    """
    nodes = collect_node_ids(tasks)
    missing: List[DependencyIssue] = []
    selfs: List[DependencyIssue] = []
    duplicates: List[DependencyIssue] = []

    for record in iter_records(tasks):
        source = record.task_id
        seen: Set[TaskId] = set()
        for raw in record.dependencies:
            target = normalize_dependency(record, raw)
            if target is None or target not in nodes:
                dep_label = str(target) if target is not None else str(raw)
                missing.append(
                    DependencyIssue(str(source), dep_label, ISSUE_MISSING, f"Dependency '{dep_label}' not found")
                )
                continue
            if target == source:
                selfs.append(DependencyIssue(str(source), str(target), ISSUE_SELF, "Task cannot depend on itself"))
                continue
            if target in seen:
                duplicates.append(
                    DependencyIssue(str(source), str(target), ISSUE_DUPLICATE, f"Dependency '{target}' listed more than once")
                )
                continue
            seen.add(target)

    circular: List[DependencyIssue] = []
    for cycle, (source, target) in find_cycles(build_dependency_graph(tasks)):
        labels = tuple(str(n) for n in cycle)
        circular.append(
            DependencyIssue(
                str(source),
                str(target),
                ISSUE_CIRCULAR,
                "Circular dependency: " + " -> ".join(labels + (labels[0],)),
                cycle=labels,
            )
        )

    issues = missing + selfs + duplicates + circular
    return ValidationReport(valid=not issues, issues=issues)


def new_blocking_issues(before: List[Task], after: List[Task]) -> List[DependencyIssue]:
    """Blocking issues present in ``after`` that ``before`` did not have."""
    known = {issue.key() for issue in validate_dependencies(before).issues}
    return [
        issue
        for issue in validate_dependencies(after).issues
        if issue.issue_type in BLOCKING_ISSUES and issue.key() not in known
    ]


def _copy_tasks(tasks: List[Task]) -> List[Task]:
    return [t.copy() for t in tasks]


def _filter_dependencies(tasks: List[Task], drop) -> Dict[TaskId, int]:
    """Remove dependency entries for which drop(record, raw, target, kept) is true."""
    removed: Dict[TaskId, int] = {}
    for record in iter_records(tasks):
        kept: List[Any] = []
        kept_targets: List[Optional[TaskId]] = []
        for raw in record.dependencies:
            target = normalize_dependency(record, raw)
            if drop(record, raw, target, kept_targets):
                removed[record.task_id] = removed.get(record.task_id, 0) + 1
                continue
            kept.append(raw)
            kept_targets.append(target)
        if len(kept) != len(record.dependencies):
            record.dependencies = kept
    return removed


def _record_fixes(stats: RepairStats, touched: Set[TaskId]) -> None:
    stats.tasks_fixed = sum(1 for t in touched if isinstance(t, TopLevel))
    stats.subtasks_fixed = sum(1 for t in touched if isinstance(t, Sub))


def repair_dependencies(tasks: List[Task]) -> RepairResult:
    """Return a repaired copy of ``tasks``; the input is left untouched.

    Fixed pass order: deduplicate, drop dangling references, drop
    self-references, break the back-edge of each detected cycle, then make
    sure every parent keeps at least one subtask without dependencies.
    """
    repaired = _copy_tasks(tasks)
    stats = RepairStats()
    touched: Set[TaskId] = set()

    if validate_dependencies(repaired).by_type(ISSUE_DUPLICATE):
        removed = _filter_dependencies(
            repaired, lambda record, raw, target, kept: target is not None and target in kept
        )
        stats.duplicates_removed = sum(removed.values())
        touched.update(removed)

    if validate_dependencies(repaired).by_type(ISSUE_MISSING):
        nodes = collect_node_ids(repaired)
        removed = _filter_dependencies(
            repaired, lambda record, raw, target, kept: target is None or target not in nodes
        )
        stats.missing_removed = sum(removed.values())
        touched.update(removed)

    if validate_dependencies(repaired).by_type(ISSUE_SELF):
        removed = _filter_dependencies(repaired, lambda record, raw, target, kept: target == record.task_id)
        stats.self_removed = sum(removed.values())
        touched.update(removed)

    while True:
        cycles = find_cycles(build_dependency_graph(repaired))
        if not cycles:
            break
        back_edges = {edge for _, edge in cycles}
        removed = _filter_dependencies(
            repaired, lambda record, raw, target, kept: (record.task_id, target) in back_edges
        )
        stats.cycles_broken += len(back_edges)
        touched.update(removed)

    for task in repaired:
        if not task.subtasks:
            continue
        if any(not sub.dependencies for sub in task.subtasks):
            continue
        first = task.subtasks[0]
        first.dependencies = []
        stats.independent_subtasks_restored += 1
        touched.add(first.task_id)

    _record_fixes(stats, touched)
    return RepairResult(tasks=repaired, stats=stats)


def strip_references(tasks: List[Task], removed: Set[TaskId]) -> List[Any]:
    """Drop dependencies pointing at ``removed`` ids, in place.

    Returns the records whose dependency lists changed.
    """
    changed: List[Any] = []
    for record in iter_records(tasks):
        kept = [raw for raw in record.dependencies if normalize_dependency(record, raw) not in removed]
        if len(kept) != len(record.dependencies):
            record.dependencies = kept
            changed.append(record)
    return changed


__all__ = [
    "ISSUE_MISSING",
    "ISSUE_SELF",
    "ISSUE_DUPLICATE",
    "ISSUE_CIRCULAR",
    "BLOCKING_ISSUES",
    "DependencyIssue",
    "ValidationReport",
    "RepairStats",
    "RepairResult",
    "iter_records",
    "normalize_dependency",
    "collect_node_ids",
    "build_dependency_graph",
    "find_cycles",
    "validate_dependencies",
    "new_blocking_issues",
    "repair_dependencies",
    "strip_references",
]
