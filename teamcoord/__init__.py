"""
Team Coordination Module

Coordination and lifecycle tracking for short-lived worker agents that share
a file-persisted state document and exchange messages through inboxes.

Modules:
- state_store: Atomic read/modify/write of the shared JSON document
- agents: Agent lifecycle, tool usage telemetry, dashboard
- tasks: Task board with dependency-gated claims
- messaging: Typed messages and the shutdown handshake
- policy: Pure decisions over state snapshots
- lifecycle: Worker and lead sessions tying the pieces together
"""

from .errors import (
    CoordinationError,
    CorruptState,
    UnknownAgent,
    InvalidTransition,
    UnknownTask,
    LeadOnlyOperation,
    HandshakeMismatch,
    StaleRevision,
    MessageValidationError,
)

from .schemas import (
    AgentStatus,
    TaskStatus,
    empty_state,
)

from .state_store import (
    STATE_FILE_NAME,
    StateStore,
    get_state_path,
)

from .agents import (
    AGENT_TERMINAL_STATUSES,
    ToolUsageWindow,
    get_agent,
    require_agent,
    register_agent,
    append_tool_usage,
    record_tool_usage,
    complete_agent,
    get_stale_agents,
    get_tracking_stats,
    get_agent_dashboard,
    atomic_register_agent,
    atomic_complete_agent,
)

from .tasks import (
    VALID_TASK_TRANSITIONS,
    TASK_TERMINAL_STATUSES,
    ClaimableTasks,
    get_task,
    create_task,
    claim_task,
    complete_task,
    fail_task,
    requeue_task,
    list_claimable,
    get_task_summary,
    atomic_create_task,
    atomic_claim_task,
    atomic_complete_task,
    atomic_fail_task,
    atomic_requeue_task,
)

from .messaging import (
    MESSAGE_KINDS,
    PlainMessage,
    ShutdownRequest,
    ShutdownResponse,
    validate_message,
    InboxTransport,
    MessageBus,
)

from .policy import (
    should_self_terminate,
    may_claim,
    review_shutdown_request,
    find_stale_agents,
)

from .lifecycle import (
    WorkerSession,
    LeadSession,
)

__all__ = [
    # Errors
    'CoordinationError',
    'CorruptState',
    'UnknownAgent',
    'InvalidTransition',
    'UnknownTask',
    'LeadOnlyOperation',
    'HandshakeMismatch',
    'StaleRevision',
    'MessageValidationError',
    # Schema
    'AgentStatus',
    'TaskStatus',
    'empty_state',
    # State store
    'STATE_FILE_NAME',
    'StateStore',
    'get_state_path',
    # Agent registry
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
    'get_agent_dashboard',
    'atomic_register_agent',
    'atomic_complete_agent',
    # Task board
    'VALID_TASK_TRANSITIONS',
    'TASK_TERMINAL_STATUSES',
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
    # Messaging
    'MESSAGE_KINDS',
    'PlainMessage',
    'ShutdownRequest',
    'ShutdownResponse',
    'validate_message',
    'InboxTransport',
    'MessageBus',
    # Policy
    'should_self_terminate',
    'may_claim',
    'review_shutdown_request',
    'find_stale_agents',
    # Lifecycle
    'WorkerSession',
    'LeadSession',
]
