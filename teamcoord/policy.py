"""
Coordination Policy Module

Pure decision logic over state snapshots:
- may a worker claim a task?
- should a worker self-terminate now?
- should the lead approve a shutdown request?
- which agents are stale?

Nothing in this module reads or writes the state document.
"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from .agents import get_stale_agents
from .schemas import TaskStatus

__all__ = [
    'summarize_tasks',
    'should_self_terminate',
    'unresolved_dependencies',
    'claim_block_reason',
    'may_claim',
    'review_shutdown_request',
    'find_stale_agents',
]


def summarize_tasks(state: Dict[str, Any]) -> Dict[str, int]:
    """Count tasks by status in a single pass."""
    summary = {status.value: 0 for status in TaskStatus}
    for task in state.get('tasks', []):
        status = task.get('status')
        if status in summary:
            summary[status] += 1
    return summary


def should_self_terminate(task_summary: Mapping[str, int]) -> bool:
    """
    True iff there is no pending and no in-progress work.

    Evaluate once, after draining the queue and immediately before sending a
    shutdown request. The snapshot may be stale by the time the request is
    read, so the lead re-checks with review_shutdown_request.
    """
    pending = task_summary.get(TaskStatus.PENDING.value, 0)
    in_progress = task_summary.get(TaskStatus.IN_PROGRESS.value, 0)
    return pending == 0 and in_progress == 0


def unresolved_dependencies(task: Dict[str, Any], status_by_id: Mapping[str, str]) -> List[str]:
    """Ids in blocked_by that are not completed. Unknown ids count as unresolved."""
    return [
        dep for dep in task.get('blocked_by') or []
        if status_by_id.get(dep) != TaskStatus.COMPLETED.value
    ]


def claim_block_reason(
    task: Dict[str, Any],
    status_by_id: Mapping[str, str],
    agent_name: str,
) -> Optional[str]:
    """
    Explain why agent_name may not claim task, or None if the claim is allowed.

    A claim requires the task to be pending, every dependency completed, and
    the owner either unset or equal to the claimant.
    """
    status = task.get('status')
    if status != TaskStatus.PENDING.value:
        return f"task is {status}, only pending tasks can be claimed"

    unresolved = unresolved_dependencies(task, status_by_id)
    if unresolved:
        return f"blocked by unresolved tasks: {', '.join(unresolved)}"

    owner = task.get('owner')
    if owner and owner != agent_name:
        return f"task is assigned to {owner}"

    return None


def may_claim(state: Dict[str, Any], task_id: str, agent_name: str) -> bool:
    """Boolean form of the claim gate over a state snapshot."""
    tasks = state.get('tasks', [])
    status_by_id = {t.get('task_id'): t.get('status') for t in tasks}
    for task in tasks:
        if task.get('task_id') == task_id:
            return claim_block_reason(task, status_by_id, agent_name) is None
    return False


def review_shutdown_request(state: Dict[str, Any]) -> bool:
    """
    Lead-side re-validation of a worker's shutdown request.

    Approve only if the board is still drained at the moment the request is
    handled; new work appearing since the worker's snapshot means deny.
    """
    return should_self_terminate(summarize_tasks(state))


def find_stale_agents(
    state: Dict[str, Any],
    threshold_ms: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[str]:
    """Ids of running agents past the staleness threshold."""
    return [a['agent_id'] for a in get_stale_agents(state, threshold_ms=threshold_ms, now=now)]
