"""
Agent Registry Module for Team Coordination

Tracks each worker's lifecycle (running -> completed | failed), keeps a
bounded window of tool-usage telemetry per agent, and renders the compact
dashboard that is injected into a token-limited prompt context.

State-level functions take and mutate a state dict. The atomic_* wrappers
and record_tool_usage take a working directory and persist through
StateStore.update.
"""

import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, Iterator, List, Optional

from . import config
from .errors import UnknownAgent
from .schemas import AgentStatus
from .state_store import StateStore
from .timestamps import elapsed_ms, now_iso, utc_now

logger = logging.getLogger(__name__)

AGENT_TERMINAL_STATUSES = frozenset({AgentStatus.COMPLETED.value, AgentStatus.FAILED.value})

__all__ = [
    'AGENT_TERMINAL_STATUSES',
    'ToolUsageWindow',
    'get_agent',
    'require_agent',
    'register_agent',
    'append_tool_usage',
    'record_tool_usage',
    'complete_agent',
    'get_stale_agents',
    'get_tracking_stats',
    'format_elapsed',
    'strip_agent_type_prefix',
    'get_agent_dashboard',
    'atomic_register_agent',
    'atomic_complete_agent',
]


# ============================================================================
# TOOL USAGE WINDOW
# ============================================================================

class ToolUsageWindow:
    """
    Fixed-capacity FIFO window of tool usage entries.

    Backed by a deque with maxlen, so appending to a full window evicts the
    oldest entry in O(1). The window is rebuilt from the stored list on each
    persisted insert, so recording one entry costs O(capacity). Loading an
    oversized legacy list keeps only the newest `capacity` entries.
    """

    def __init__(self, entries: Iterable[Dict[str, Any]] = (), capacity: int = config.MAX_TOOL_USAGE_ENTRIES):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._ring: Deque[Dict[str, Any]] = deque(entries, maxlen=capacity)

    def append(self, entry: Dict[str, Any]) -> None:
        self._ring.append(entry)

    def last(self) -> Optional[Dict[str, Any]]:
        return self._ring[-1] if self._ring else None

    def to_list(self) -> List[Dict[str, Any]]:
        return list(self._ring)

    def __len__(self) -> int:
        return len(self._ring)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self._ring)


# ============================================================================
# LOOKUP
# ============================================================================

def get_agent(state: Dict[str, Any], agent_id: str) -> Optional[Dict[str, Any]]:
    """
    Find an agent record by id.

    Returns the dict stored in state, so modifications persist if the state
    is later written back.
    """
    for agent in state.get('agents', []):
        if agent.get('agent_id') == agent_id:
            return agent
    return None


def require_agent(state: Dict[str, Any], agent_id: str) -> Dict[str, Any]:
    """Like get_agent, but raises UnknownAgent when the agent is missing."""
    agent = get_agent(state, agent_id)
    if agent is None:
        raise UnknownAgent(agent_id)
    return agent


# ============================================================================
# LIFECYCLE
# ============================================================================

def register_agent(
    state: Dict[str, Any],
    agent_id: str,
    agent_type: str,
    parent_mode: str,
    task_description: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Register a running agent.

    Registration is idempotent: if agent_id is already present the existing
    record is returned unchanged and totals are not incremented.

    Args:
        state: State dict to mutate
        agent_id: Unique, opaque agent id
        agent_type: Agent type label, may carry a namespace prefix ("team:executor")
        parent_mode: Mode of the spawning session
        task_description: Optional short description shown on the dashboard
        now: Override for the current time

    Returns:
        The agent record stored in state
    """
    existing = get_agent(state, agent_id)
    if existing is not None:
        logger.debug(f"Agent {agent_id} already registered, leaving record unchanged")
        return existing

    record = {
        'agent_id': agent_id,
        'agent_type': agent_type,
        'started_at': now_iso(now),
        'completed_at': None,
        'parent_mode': parent_mode,
        'status': AgentStatus.RUNNING.value,
        'task_description': task_description,
        'tool_usage': [],
    }
    state.setdefault('agents', []).append(record)
    totals = state.setdefault('totals', {})
    totals['spawned'] = totals.get('spawned', 0) + 1

    logger.info(f"Registered agent {agent_id} ({agent_type}, mode={parent_mode})")
    return record


def append_tool_usage(
    state: Dict[str, Any],
    agent_id: str,
    tool_name: str,
    success: bool = True,
    now: Optional[datetime] = None,
) -> bool:
    """
    Append a tool usage entry to an agent's window, evicting the oldest entry
    once the window holds MAX_TOOL_USAGE_ENTRIES.

    Returns:
        True if the entry was recorded, False if the agent is unknown
    """
    agent = get_agent(state, agent_id)
    if agent is None:
        return False

    window = ToolUsageWindow(agent.get('tool_usage') or [])
    window.append({
        'tool_name': tool_name,
        'timestamp': now_iso(now),
        'success': bool(success),
    })
    agent['tool_usage'] = window.to_list()
    return True


def record_tool_usage(
    directory: str,
    agent_id: str,
    tool_name: str,
    success: bool = True,
    store: Optional[StateStore] = None,
) -> bool:
    """
    Record a tool call for an agent and persist it.

    Recording for an unknown agent is a silent no-op: workers may report tool
    calls before their registration lands, and the document is not rewritten.

    Args:
        directory: Working directory holding the state document
        agent_id: Agent that made the call
        tool_name: Name of the tool invoked
        success: Whether the call succeeded
        store: Optional StateStore to use instead of one built from directory

    Returns:
        True if the entry was persisted, False if the agent was unknown
    """
    store = store or StateStore(directory)

    if get_agent(store.read(), agent_id) is None:
        logger.debug(f"Ignoring tool usage {tool_name} for unknown agent {agent_id}")
        return False

    recorded = []

    def _apply(state: Dict[str, Any]) -> Dict[str, Any]:
        recorded.append(append_tool_usage(state, agent_id, tool_name, success))
        return state

    store.update(_apply)
    if not recorded[0]:
        # Agent vanished between the read and the update (explicit reset).
        logger.debug(f"Agent {agent_id} disappeared before tool usage could be recorded")
    return recorded[0]


def complete_agent(
    state: Dict[str, Any],
    agent_id: str,
    outcome: str = AgentStatus.COMPLETED.value,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Move a running agent to a terminal status and bump the matching total.

    Completing an agent that is already terminal is a no-op, so totals are
    never double counted.

    Args:
        state: State dict to mutate
        agent_id: Agent to complete
        outcome: "completed" or "failed"
        now: Override for the current time

    Returns:
        The agent record

    Raises:
        ValueError: If outcome is not a terminal status
        UnknownAgent: If the agent is not registered
    """
    outcome = AgentStatus(outcome).value
    if outcome not in AGENT_TERMINAL_STATUSES:
        raise ValueError(f"outcome must be one of {sorted(AGENT_TERMINAL_STATUSES)}, got {outcome!r}")

    agent = require_agent(state, agent_id)
    previous_status = agent.get('status')
    if previous_status in AGENT_TERMINAL_STATUSES:
        logger.info(f"Agent {agent_id} already {previous_status}, ignoring {outcome}")
        return agent

    agent['status'] = outcome
    agent['completed_at'] = now_iso(now)
    totals = state.setdefault('totals', {})
    totals[outcome] = totals.get(outcome, 0) + 1

    logger.info(f"Agent {agent_id} transitioned from {previous_status} to {outcome}")
    return agent


# ============================================================================
# VIEWS
# ============================================================================

def get_stale_agents(
    state: Dict[str, Any],
    threshold_ms: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """
    Return running agents whose runtime exceeds the threshold.

    Completed and failed agents are never stale regardless of age. Staleness
    is advisory; nothing here terminates an agent.

    Args:
        state: State dict
        threshold_ms: Threshold in milliseconds; defaults to config.STALE_THRESHOLD_MS
        now: Override for the current time
    """
    if threshold_ms is None:
        threshold_ms = config.STALE_THRESHOLD_MS
    now = now or utc_now()

    stale = []
    for agent in state.get('agents', []):
        if agent.get('status') != AgentStatus.RUNNING.value:
            continue
        elapsed = elapsed_ms(agent.get('started_at'), now)
        if elapsed is not None and elapsed > threshold_ms:
            stale.append(agent)
    return stale


def get_tracking_stats(state: Dict[str, Any]) -> Dict[str, int]:
    """Count agents by status in a single pass."""
    stats = {'running': 0, 'completed': 0, 'failed': 0, 'total': 0}
    for agent in state.get('agents', []):
        stats['total'] += 1
        status = agent.get('status')
        if status in stats:
            stats[status] += 1
    return stats


def format_elapsed(seconds: float) -> str:
    """Render a duration compactly: 42s, 3m12s, 1h05m."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m{seconds % 60:02d}s"
    return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"


def strip_agent_type_prefix(agent_type: str) -> str:
    """Drop a namespace prefix: "team:architect-high" -> "architect-high"."""
    return agent_type.rsplit(':', 1)[-1] if agent_type else 'unknown'


def get_agent_dashboard(
    state: Dict[str, Any],
    threshold_ms: Optional[int] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Render running agents as a compact multi-line summary.

    Format:
        Agent Dashboard (2 active)
          [abcd123] executor 1m05s tools:2 last:Edit - Fix the auth bug
          [very-lo] architect 6m00s tools:0
        ⚠ 1 stale agent(s) detected

    Returns an empty string when no agent is running.
    """
    now = now or utc_now()
    running = [a for a in state.get('agents', []) if a.get('status') == AgentStatus.RUNNING.value]
    if not running:
        return ""

    lines = [f"Agent Dashboard ({len(running)} active)"]
    for agent in running:
        short_id = str(agent.get('agent_id', ''))[:config.AGENT_ID_DISPLAY_LENGTH]
        agent_type = strip_agent_type_prefix(agent.get('agent_type', ''))
        elapsed = elapsed_ms(agent.get('started_at'), now)
        elapsed_text = format_elapsed(elapsed / 1000) if elapsed is not None else "?"

        window = ToolUsageWindow(agent.get('tool_usage') or [])
        parts = [f"[{short_id}]", agent_type, elapsed_text, f"tools:{len(window)}"]
        last = window.last()
        if last is not None:
            parts.append(f"last:{last.get('tool_name')}")

        line = "  " + " ".join(parts)
        if agent.get('task_description'):
            line += f" - {agent['task_description']}"
        lines.append(line)

    stale = get_stale_agents(state, threshold_ms=threshold_ms, now=now)
    if stale:
        lines.append(f"⚠ {len(stale)} stale agent(s) detected")

    return "\n".join(lines)


# ============================================================================
# PERSISTED OPERATIONS
# ============================================================================

def atomic_register_agent(
    directory: str,
    agent_id: str,
    agent_type: str,
    parent_mode: str,
    task_description: Optional[str] = None,
    store: Optional[StateStore] = None,
) -> Dict[str, Any]:
    """Register an agent and persist the result. Returns the agent record."""
    store = store or StateStore(directory)
    registered = {}

    def _apply(state: Dict[str, Any]) -> Dict[str, Any]:
        registered.update(register_agent(state, agent_id, agent_type, parent_mode, task_description))
        return state

    store.update(_apply)
    return registered


def atomic_complete_agent(
    directory: str,
    agent_id: str,
    outcome: str = AgentStatus.COMPLETED.value,
    store: Optional[StateStore] = None,
) -> Dict[str, Any]:
    """
    Complete an agent and persist the result.

    Raises:
        UnknownAgent: If the agent is not registered; nothing is written
    """
    store = store or StateStore(directory)
    completed = {}

    def _apply(state: Dict[str, Any]) -> Dict[str, Any]:
        completed.update(complete_agent(state, agent_id, outcome))
        return state

    store.update(_apply)
    return completed
