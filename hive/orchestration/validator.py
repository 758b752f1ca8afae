"""
Task Descriptor Validator — the admission gate.

A batch is checked as a whole before anything is scheduled. Every violation
is collected (not just the first) so a caller can fix all issues in one pass,
and a single bad descriptor rejects the entire batch.
"""

from __future__ import annotations

from collections import Counter
from typing import Sequence

import structlog

from hive.orchestration.errors import BatchRejection
from hive.orchestration.graph import cycle_violations, find_cycles
from hive.orchestration.models import Batch, TaskDescriptor, Violation, ViolationCode
from hive.orchestration.policy import CapabilityRegistry

logger = structlog.get_logger(__name__)


def validate_batch(batch: Batch, registry: CapabilityRegistry) -> list[TaskDescriptor]:
    """Return the accepted descriptors or raise ``BatchRejection``.

    Pure: no scheduler state is touched, nothing is logged above debug.
    """
    violations = collect_violations(batch.tasks, registry)
    if violations:
        logger.debug(
            "validator.rejected",
            batch_id=batch.batch_id,
            violations=len(violations),
        )
        raise BatchRejection(batch.batch_id, violations)
    return list(batch.tasks)


def collect_violations(
    tasks: Sequence[TaskDescriptor],
    registry: CapabilityRegistry,
) -> list[Violation]:
    violations: list[Violation] = []

    counts = Counter(task.task_id for task in tasks)
    known_ids = set(counts)

    for index, task in enumerate(tasks):
        if not task.task_id.strip():
            violations.append(Violation(
                code=ViolationCode.EMPTY_TASK_ID,
                message=f"Task at position {index} has an empty identity",
            ))

    for task_id, count in counts.items():
        if count > 1:
            violations.append(Violation(
                code=ViolationCode.DUPLICATE_TASK_ID,
                message=f"Task identity '{task_id}' appears {count} times",
                task_ids=(task_id,),
            ))

    for task in tasks:
        unknown = sorted(cap for cap in task.capabilities if not registry.is_known(cap))
        if unknown:
            violations.append(Violation(
                code=ViolationCode.UNKNOWN_CAPABILITY,
                message=(
                    f"Task '{task.task_id}' declares unknown capability(ies): "
                    f"{', '.join(unknown)}"
                ),
                task_ids=(task.task_id,),
            ))

        if task.task_id in task.depends_on:
            violations.append(Violation(
                code=ViolationCode.SELF_DEPENDENCY,
                message=f"Task '{task.task_id}' depends on itself",
                task_ids=(task.task_id,),
            ))

        missing = [dep for dep in dict.fromkeys(task.depends_on) if dep not in known_ids]
        if missing:
            violations.append(Violation(
                code=ViolationCode.UNKNOWN_DEPENDENCY,
                message=(
                    f"Task '{task.task_id}' depends on unknown task(s): "
                    f"{', '.join(missing)}"
                ),
                task_ids=(task.task_id, *missing),
            ))

    # Cycle detection over the edges that resolve; self-loops are reported above.
    order = list(counts)
    edges = {task_id: [] for task_id in order}
    for task in tasks:
        for dep in task.depends_on:
            if dep in known_ids and dep != task.task_id and dep not in edges[task.task_id]:
                edges[task.task_id].append(dep)
    violations.extend(cycle_violations(find_cycles(order, edges)))

    return violations
