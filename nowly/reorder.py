"""Drag-and-drop reordering over fractional position keys.

``resolve_reorder`` works on a snapshot of one day's tasks and never writes
anything. It returns either the single new key for the moved task or, when
the neighbours are too close, the full desired order for
``TaskStore.rebalance``.
"""
from dataclasses import dataclass, field
import logging
from typing import Iterable

from .position import REBALANCE_NEEDED, position_between, rebalance_positions

logger = logging.getLogger(__name__)


@dataclass
class ReorderResult:
    task_id: int
    new_position: str | None = None
    # ids in the desired order when a rebalance is required
    rebalance: list[int] | None = field(default=None)

    @property
    def needs_rebalance(self) -> bool:
        return self.rebalance is not None


def _pairs(snapshot: Iterable) -> list[tuple[int, str]]:
    out = []
    for entry in snapshot:
        if isinstance(entry, (tuple, list)):
            tid, pos = entry
        else:
            tid, pos = entry.id, entry.position
        out.append((tid, pos))
    # id breaks ties so a legacy duplicate key still gives a stable order
    out.sort(key=lambda p: (p[1], p[0]))
    return out


def resolve_reorder(snapshot: Iterable, task_id: int, new_index: int) -> ReorderResult:
    """Compute where ``task_id`` goes when dropped at ``new_index``.

    ``snapshot`` holds ``(id, position)`` pairs or objects with ``id`` and
    ``position``; it is sorted by position first. Moving down places the task
    right after the task currently at ``new_index``, moving up places it
    right before it. ``new_index`` is clamped to the list.

    Raises ValueError if ``task_id`` is not in the snapshot.
    """
    ordered = _pairs(snapshot)
    ids = [tid for tid, _ in ordered]
    try:
        current = ids.index(task_id)
    except ValueError:
        raise ValueError(f"task {task_id} is not in the list being reordered")

    new_index = max(0, min(new_index, len(ordered) - 1))
    if new_index == current:
        return ReorderResult(task_id=task_id, new_position=ordered[current][1])

    if new_index > current:
        lower = ordered[new_index][1]
        upper = ordered[new_index + 1][1] if new_index + 1 < len(ordered) else ''
    else:
        lower = ordered[new_index - 1][1] if new_index > 0 else ''
        upper = ordered[new_index][1]

    key = position_between(lower, upper)
    if key != REBALANCE_NEEDED:
        return ReorderResult(task_id=task_id, new_position=key)

    desired = [tid for tid in ids if tid != task_id]
    desired.insert(new_index, task_id)
    logger.info("reorder of task %s to index %d needs a rebalance of %d tasks",
                task_id, new_index, len(desired))
    return ReorderResult(task_id=task_id, rebalance=desired)


def rebalance_order(task_ids: list[int]) -> list[tuple[int, str]]:
    """Pair each id with a fresh evenly spaced key, preserving the given order."""
    return list(zip(task_ids, rebalance_positions(len(task_ids))))
