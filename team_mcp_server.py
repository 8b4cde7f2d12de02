#!/usr/bin/env python3
"""
Team Coordination MCP Server

A Model Context Protocol (MCP) server exposing the worker-facing coordination
operations (agent registration and telemetry, task claims, messaging and the
shutdown handshake) over a shared, file-persisted state document.

Every tool returns a dict with a "success" flag. Rejected operations come back
as {"success": False, "error": ..., "error_type": ...} rather than raising.
"""

import os
import logging
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from teamcoord import config
from teamcoord.agents import (
    atomic_complete_agent,
    atomic_register_agent,
    get_agent_dashboard as render_agent_dashboard,
    get_stale_agents,
    get_tracking_stats as count_agents,
    record_tool_usage as persist_tool_usage,
)
from teamcoord.errors import CoordinationError
from teamcoord.messaging import SHUTDOWN_RESPONSE_KIND, MessageBus
from teamcoord.policy import review_shutdown_request
from teamcoord.state_store import StateStore
from teamcoord.tasks import (
    atomic_claim_task,
    atomic_complete_task,
    atomic_create_task,
    atomic_fail_task,
    atomic_requeue_task,
    get_task_summary as summarize_board,
    list_claimable,
)

# Initialize MCP server
mcp = FastMCP("Team Coordination")

# Configuration
# TEAMCOORD_DIRECTORY: working directory whose state document the tools operate on
# Example: export TEAMCOORD_DIRECTORY=/Users/yourname/Developer/Projects/yourproject
# Default: the server's current directory
WORKING_DIRECTORY = os.getenv('TEAMCOORD_DIRECTORY', os.getcwd())

# Setup logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# One bus per participant so outstanding shutdown requests survive between calls
_buses: Dict[str, MessageBus] = {}


def _store() -> StateStore:
    return StateStore(WORKING_DIRECTORY)


def _bus(participant: str) -> MessageBus:
    bus = _buses.get(participant)
    if bus is None or bus.transport.inbox_dir != os.path.join(_store().state_dir, 'inbox'):
        bus = MessageBus(WORKING_DIRECTORY, participant)
        _buses[participant] = bus
    return bus


def _failure(error: Exception) -> Dict[str, Any]:
    return {
        "success": False,
        "error": str(error),
        "error_type": type(error).__name__,
    }


# ============================================================================
# AGENT REGISTRY TOOLS
# ============================================================================

def register_agent(
    agent_id: str,
    agent_type: str,
    parent_mode: str = "team",
    task_description: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Register a running worker agent. Registering an existing id is a no-op.

    Args:
        agent_id: Unique agent id
        agent_type: Agent type label, may carry a namespace prefix
        parent_mode: Mode of the spawning session
        task_description: Short description shown on the dashboard
    """
    agent = atomic_register_agent(WORKING_DIRECTORY, agent_id, agent_type, parent_mode,
                                  task_description=task_description, store=_store())
    return {"success": True, "agent": agent}


def record_tool_usage(agent_id: str, tool_name: str, success: bool = True) -> Dict[str, Any]:
    """
    Record one tool call for an agent. Unknown agents are ignored.

    Returns:
        {"success": True, "recorded": bool}
    """
    recorded = persist_tool_usage(WORKING_DIRECTORY, agent_id, tool_name, success, store=_store())
    return {"success": True, "recorded": recorded}


def complete_agent(agent_id: str, outcome: str = "completed") -> Dict[str, Any]:
    """
    Mark an agent completed or failed.

    Args:
        agent_id: Agent to complete
        outcome: "completed" or "failed"
    """
    try:
        agent = atomic_complete_agent(WORKING_DIRECTORY, agent_id, outcome, store=_store())
    except (CoordinationError, ValueError) as e:
        return _failure(e)
    return {"success": True, "agent": agent}


def get_agent_dashboard() -> Dict[str, Any]:
    """Compact text dashboard of running agents (empty when none are running)."""
    return {"success": True, "dashboard": render_agent_dashboard(_store().read())}


def get_tracking_stats() -> Dict[str, Any]:
    """Agent counts by status plus ids of stale agents."""
    state = _store().read()
    return {
        "success": True,
        "stats": count_agents(state),
        "stale_agents": [a['agent_id'] for a in get_stale_agents(state)],
    }


# ============================================================================
# TASK BOARD TOOLS
# ============================================================================

def create_task(
    description: str,
    owner: Optional[str] = None,
    blocked_by: Optional[List[str]] = None,
    actor: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a pending task. Lead only.

    Args:
        description: What needs doing
        owner: Optional worker name to pre-assign
        blocked_by: Task ids that must complete first
        actor: Participant creating the task; defaults to the lead
    """
    try:
        task = atomic_create_task(WORKING_DIRECTORY, description, owner=owner,
                                  blocked_by=blocked_by, actor=actor, store=_store())
    except (CoordinationError, ValueError) as e:
        return _failure(e)
    return {"success": True, "task": task}


def claim_task(task_id: str, agent_name: str) -> Dict[str, Any]:
    """Claim a pending task whose dependencies are completed."""
    try:
        task = atomic_claim_task(WORKING_DIRECTORY, task_id, agent_name, store=_store())
    except CoordinationError as e:
        return _failure(e)
    return {"success": True, "task": task}


def complete_task(task_id: str, agent_name: Optional[str] = None, result: Optional[str] = None) -> Dict[str, Any]:
    """Mark an in-progress task completed."""
    try:
        task = atomic_complete_task(WORKING_DIRECTORY, task_id, agent_id=agent_name,
                                    result=result, store=_store())
    except CoordinationError as e:
        return _failure(e)
    return {"success": True, "task": task}


def fail_task(task_id: str, agent_name: Optional[str] = None, reason: Optional[str] = None) -> Dict[str, Any]:
    """Mark an in-progress task failed. It stays failed until the lead requeues it."""
    try:
        task = atomic_fail_task(WORKING_DIRECTORY, task_id, agent_id=agent_name,
                                reason=reason, store=_store())
    except CoordinationError as e:
        return _failure(e)
    return {"success": True, "task": task}


def requeue_task(task_id: str, owner: Optional[str] = None, actor: Optional[str] = None) -> Dict[str, Any]:
    """Re-queue a failed task as a new pending task. Lead only."""
    try:
        task = atomic_requeue_task(WORKING_DIRECTORY, task_id, owner=owner, actor=actor, store=_store())
    except CoordinationError as e:
        return _failure(e)
    return {"success": True, "task": task}


def list_claimable_tasks(agent_name: str, limit: int = 0) -> Dict[str, Any]:
    """
    Tasks agent_name could claim now, lowest id first.

    Args:
        agent_name: Worker name used for owner matching
        limit: Maximum number of tasks to return (0 = all)
    """
    tasks = []
    for task in list_claimable(_store().read(), agent_name):
        tasks.append(task)
        if limit > 0 and len(tasks) >= limit:
            break
    return {"success": True, "tasks": tasks}


def get_task_summary() -> Dict[str, Any]:
    """Task counts by status and whether the board is drained."""
    state = _store().read()
    return {
        "success": True,
        "summary": summarize_board(state),
        "drained": review_shutdown_request(state),
    }


# ============================================================================
# MESSAGING TOOLS
# ============================================================================

def send_message(sender: str, recipient: str, content: str, summary: str = "") -> Dict[str, Any]:
    """Send a plain message. Fire-and-forget."""
    try:
        envelope = _bus(sender).send_text(recipient, content, summary)
    except CoordinationError as e:
        return _failure(e)
    return {"success": True, "message_id": envelope['message_id']}


def request_shutdown(requester: str, recipient: str) -> Dict[str, Any]:
    """Send a shutdown_request. The returned request_id must come back verbatim."""
    try:
        envelope = _bus(requester).request_shutdown(recipient)
    except CoordinationError as e:
        return _failure(e)
    return {"success": True, "request_id": envelope['request_id']}


def respond_shutdown(responder: str, requester: str, request_id: str, approve: bool) -> Dict[str, Any]:
    """
    Answer a shutdown_request.

    Args:
        responder: Participant answering
        requester: Sender of the shutdown_request
        request_id: The exact request_id from the request
        approve: Whether the shutdown is approved
    """
    request = {
        'kind': 'shutdown_request',
        'recipient': responder,
        'request_id': request_id,
        'sender': requester,
    }
    try:
        _bus(responder).respond_to_shutdown(request, approve)
    except CoordinationError as e:
        return _failure(e)
    return {"success": True, "request_id": request_id, "approve": approve}


def read_inbox(participant: str) -> Dict[str, Any]:
    """
    Drain a participant's inbox.

    Shutdown responses are correlated with this participant's outstanding
    requests and annotated with handshake: approved | denied | mismatch.
    """
    bus = _bus(participant)
    messages = bus.read_inbox()
    for message in messages:
        if message.get('kind') != SHUTDOWN_RESPONSE_KIND:
            continue
        try:
            message['handshake'] = 'approved' if bus.resolve_shutdown_response(message) else 'denied'
        except CoordinationError as e:
            logger.warning(f"Shutdown response for {participant} rejected: {e}")
            message['handshake'] = 'mismatch'
    return {"success": True, "messages": messages}


def reset_state() -> Dict[str, Any]:
    """Clear all agents and tasks. The only way records are removed."""
    _store().clear()
    return {"success": True}


# Registered without the decorator so the module-level names stay plain callables.
for _tool in (
    register_agent,
    record_tool_usage,
    complete_agent,
    get_agent_dashboard,
    get_tracking_stats,
    create_task,
    claim_task,
    complete_task,
    fail_task,
    requeue_task,
    list_claimable_tasks,
    get_task_summary,
    send_message,
    request_shutdown,
    respond_shutdown,
    read_inbox,
    reset_state,
):
    mcp.tool(_tool)


if __name__ == "__main__":
    mcp.run()
