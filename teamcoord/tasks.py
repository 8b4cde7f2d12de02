"""
Task Board Module for Team Coordination

Task records, dependency gating, and the claim/complete/fail transitions.

State Machine (per task):
    pending -> in_progress -> completed
                           -> failed

Only the lead creates tasks. Workers claim, complete and fail tasks; a claim
fills an empty owner but never rewrites one the lead assigned.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from . import config
from .errors import InvalidTransition, LeadOnlyOperation, UnknownTask
from .policy import claim_block_reason, summarize_tasks
from .schemas import TaskStatus
from .state_store import StateStore
from .timestamps import now_iso

logger = logging.getLogger(__name__)

# Valid task status transitions (from_status -> list of valid to_statuses)
VALID_TASK_TRANSITIONS: Dict[TaskStatus, List[TaskStatus]] = {
    TaskStatus.PENDING: [TaskStatus.IN_PROGRESS],
    TaskStatus.IN_PROGRESS: [TaskStatus.COMPLETED, TaskStatus.FAILED],
    TaskStatus.COMPLETED: [],  # Terminal
    TaskStatus.FAILED: [],  # Terminal; requeue creates a new task
}

TASK_TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED.value, TaskStatus.FAILED.value})

__all__ = [
    'VALID_TASK_TRANSITIONS',
    'TASK_TERMINAL_STATUSES',
    'is_valid_task_transition',
    'ClaimableTasks',
    'get_task',
    'create_task',
    'claim_task',
    'complete_task',
    'fail_task',
    'requeue_task',
    'list_claimable',
    'get_task_summary',
    'atomic_create_task',
    'atomic_claim_task',
    'atomic_complete_task',
    'atomic_fail_task',
    'atomic_requeue_task',
]


def is_valid_task_transition(current: str, target: str) -> bool:
    """Check a transition against VALID_TASK_TRANSITIONS. Unknown statuses are invalid."""
    try:
        current_status = TaskStatus(current)
        target_status = TaskStatus(target)
    except ValueError:
        return False
    return target_status in VALID_TASK_TRANSITIONS[current_status]


def _task_sort_key(task: Dict[str, Any]):
    task_id = str(task.get('task_id', ''))
    # Numeric ids order numerically; foreign non-numeric ids sort after them.
    if task_id.isdigit():
        return (0, int(task_id), '')
    return (1, 0, task_id)


def _status_index(state: Dict[str, Any]) -> Dict[str, str]:
    return {t.get('task_id'): t.get('status') for t in state.get('tasks', [])}


def _require_lead(operation: str, actor: Optional[str]) -> None:
    actor = actor or config.LEAD_NAME
    if actor != config.LEAD_NAME:
        logger.warning(f"Rejected {operation} by {actor}: reserved for {config.LEAD_NAME}")
        raise LeadOnlyOperation(operation, actor, config.LEAD_NAME)


def get_task(state: Dict[str, Any], task_id: str) -> Optional[Dict[str, Any]]:
    """Find a task by id. Returns the dict stored in state."""
    for task in state.get('tasks', []):
        if task.get('task_id') == task_id:
            return task
    return None


# ============================================================================
# CREATION (lead only)
# ============================================================================

def _next_task_id(state: Dict[str, Any]) -> str:
    highest = state.get('task_sequence', 0)
    for task in state.get('tasks', []):
        task_id = str(task.get('task_id', ''))
        if task_id.isdigit():
            highest = max(highest, int(task_id))
    state['task_sequence'] = highest + 1
    return str(highest + 1)


def create_task(
    state: Dict[str, Any],
    description: str,
    owner: Optional[str] = None,
    blocked_by: Optional[Iterable[str]] = None,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Append a pending task with a fresh id.

    Args:
        state: State dict to mutate
        description: What the task is
        owner: Optional pre-assigned worker name
        blocked_by: Task ids that must be completed before this task can be claimed
        actor: Participant creating the task; defaults to the lead
        now: Override for the current time

    Returns:
        The new task record

    Raises:
        LeadOnlyOperation: If actor is not the lead
        ValueError: If description is empty
    """
    _require_lead('create_task', actor)
    if not description or not description.strip():
        raise ValueError("description must be a non-empty string")

    dependencies: List[str] = []
    for dep in blocked_by or []:
        dep = str(dep)
        if dep not in dependencies:
            dependencies.append(dep)

    timestamp = now_iso(now)
    task = {
        'task_id': _next_task_id(state),
        'owner': owner or None,
        'status': TaskStatus.PENDING.value,
        'blocked_by': dependencies,
        'description': description,
        'claimed_by': None,
        'created_at': timestamp,
        'updated_at': timestamp,
    }
    state.setdefault('tasks', []).append(task)

    logger.info(
        f"Created task {task['task_id']} (owner={owner or 'unassigned'}, "
        f"blocked_by={dependencies or 'none'})"
    )
    return task


def requeue_task(
    state: Dict[str, Any],
    task_id: str,
    owner: Optional[str] = None,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Re-queue a failed task as a new pending task.

    The failed task is left untouched; the new task copies its description
    and dependencies and records requeued_from. The new task is unassigned
    unless owner is given.

    Raises:
        LeadOnlyOperation: If actor is not the lead
        UnknownTask: If the task does not exist
        InvalidTransition: If the task has not failed
    """
    _require_lead('requeue_task', actor)
    failed = get_task(state, task_id)
    if failed is None:
        raise UnknownTask(task_id, TaskStatus.PENDING.value)
    if failed.get('status') != TaskStatus.FAILED.value:
        raise InvalidTransition(
            task_id, failed.get('status'), TaskStatus.PENDING.value,
            reason="only failed tasks can be requeued",
        )

    task = create_task(
        state,
        failed.get('description', ''),
        owner=owner,
        blocked_by=failed.get('blocked_by'),
        actor=actor,
        now=now,
    )
    task['requeued_from'] = task_id
    logger.info(f"Requeued failed task {task_id} as {task['task_id']}")
    return task


# ============================================================================
# TRANSITIONS
# ============================================================================

def claim_task(
    state: Dict[str, Any],
    task_id: str,
    agent_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Claim a pending task whose dependencies are all completed.

    Sets status to in_progress and records the claimant. An empty owner is
    filled with the claimant; an owner set by the lead must match.

    Raises:
        UnknownTask: If the task does not exist
        InvalidTransition: If the task is not claimable by agent_id
    """
    target = TaskStatus.IN_PROGRESS.value
    task = get_task(state, task_id)
    if task is None:
        raise UnknownTask(task_id, target)

    reason = claim_block_reason(task, _status_index(state), agent_id)
    if reason is not None:
        logger.warning(f"Rejected claim of task {task_id} by {agent_id}: {reason}")
        raise InvalidTransition(task_id, task.get('status'), target, reason=reason)

    task['status'] = target
    task['claimed_by'] = agent_id
    if not task.get('owner'):
        task['owner'] = agent_id
    task['updated_at'] = now_iso(now)

    logger.info(f"Task {task_id} claimed by {agent_id}")
    return task


def _finish_task(
    state: Dict[str, Any],
    task_id: str,
    target: str,
    agent_id: Optional[str],
    now: Optional[datetime],
    **extra_fields,
) -> Dict[str, Any]:
    task = get_task(state, task_id)
    if task is None:
        raise UnknownTask(task_id, target)

    current = task.get('status')
    if not is_valid_task_transition(current, target):
        logger.warning(f"Rejected transition of task {task_id}: {current} -> {target}")
        raise InvalidTransition(task_id, current, target, reason=f"only in_progress tasks can become {target}")

    if agent_id is not None and agent_id not in (task.get('claimed_by'), task.get('owner')):
        raise InvalidTransition(
            task_id, current, target,
            reason=f"{agent_id} does not hold this task (claimed by {task.get('claimed_by')})",
        )

    task['status'] = target
    task['updated_at'] = now_iso(now)
    for key, value in extra_fields.items():
        if value is not None:
            task[key] = value

    logger.info(f"Task {task_id} transitioned from {current} to {target}")
    return task


def complete_task(
    state: Dict[str, Any],
    task_id: str,
    agent_id: Optional[str] = None,
    result: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Mark an in-progress task completed.

    Args:
        agent_id: When given, must be the task's claimant or owner
        result: Optional short summary stored on the task

    Raises:
        UnknownTask, InvalidTransition
    """
    return _finish_task(state, task_id, TaskStatus.COMPLETED.value, agent_id, now, result=result)


def fail_task(
    state: Dict[str, Any],
    task_id: str,
    agent_id: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Mark an in-progress task failed. Failed tasks are not reassigned
    automatically; see requeue_task.

    Raises:
        UnknownTask, InvalidTransition
    """
    return _finish_task(state, task_id, TaskStatus.FAILED.value, agent_id, now, failure_reason=reason)


# ============================================================================
# QUERIES
# ============================================================================

class ClaimableTasks:
    """
    Tasks an agent could claim right now, lowest id first.

    Each iteration rescans the snapshot lazily, so the sequence can be
    consumed partially and iterated again.
    """

    def __init__(self, state: Dict[str, Any], agent_name: str):
        self._state = state
        self.agent_name = agent_name

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        status_by_id = _status_index(self._state)
        ordered = sorted(self._state.get('tasks', []), key=_task_sort_key)
        for task in ordered:
            if claim_block_reason(task, status_by_id, self.agent_name) is None:
                yield task

    def first(self) -> Optional[Dict[str, Any]]:
        return next(iter(self), None)


def list_claimable(state: Dict[str, Any], agent_name: str) -> ClaimableTasks:
    """
    Tasks that are pending, unowned or owned by agent_name, and whose
    dependencies are all completed, in ascending id order.
    """
    return ClaimableTasks(state, agent_name)


def get_task_summary(state: Dict[str, Any]) -> Dict[str, int]:
    """Task counts by status: {pending, in_progress, completed, failed}."""
    return summarize_tasks(state)


# ============================================================================
# PERSISTED OPERATIONS
# ============================================================================

def _persist(directory: str, store: Optional[StateStore], operation, *args, **kwargs) -> Dict[str, Any]:
    store = store or StateStore(directory)
    touched = {}

    def _apply(state: Dict[str, Any]) -> Dict[str, Any]:
        touched.update(operation(state, *args, **kwargs))
        return state

    store.update(_apply)
    return touched


def atomic_create_task(
    directory: str,
    description: str,
    owner: Optional[str] = None,
    blocked_by: Optional[Iterable[str]] = None,
    actor: Optional[str] = None,
    store: Optional[StateStore] = None,
) -> Dict[str, Any]:
    """Create a task and persist it. Returns the new task record."""
    return _persist(directory, store, create_task, description, owner=owner, blocked_by=blocked_by, actor=actor)


def atomic_claim_task(
    directory: str,
    task_id: str,
    agent_id: str,
    store: Optional[StateStore] = None,
) -> Dict[str, Any]:
    """Claim a task and persist it. Nothing is written if the claim is rejected."""
    return _persist(directory, store, claim_task, task_id, agent_id)


def atomic_complete_task(
    directory: str,
    task_id: str,
    agent_id: Optional[str] = None,
    result: Optional[str] = None,
    store: Optional[StateStore] = None,
) -> Dict[str, Any]:
    return _persist(directory, store, complete_task, task_id, agent_id=agent_id, result=result)


def atomic_fail_task(
    directory: str,
    task_id: str,
    agent_id: Optional[str] = None,
    reason: Optional[str] = None,
    store: Optional[StateStore] = None,
) -> Dict[str, Any]:
    return _persist(directory, store, fail_task, task_id, agent_id=agent_id, reason=reason)


def atomic_requeue_task(
    directory: str,
    task_id: str,
    owner: Optional[str] = None,
    actor: Optional[str] = None,
    store: Optional[StateStore] = None,
) -> Dict[str, Any]:
    return _persist(directory, store, requeue_task, task_id, owner=owner, actor=actor)
