"""
Lifecycle Module for Team Coordination

Strings the registry, task board, policy and message bus together at the
points a worker and the lead call into them:

Worker:
    start -> (next_task -> record_tool ... -> finish_task | abandon_task)*
          -> maybe_request_shutdown -> handle_inbox (shutdown_response)

Lead:
    create_task ... -> handle_inbox (answers shutdown requests after
    re-checking the board) -> dashboard

Neither session schedules anything on its own; the executor collaborator
decides when to call each step.
"""

import logging
from typing import Any, Dict, List, Optional

from . import config
from .agents import (
    atomic_complete_agent,
    atomic_register_agent,
    get_agent_dashboard,
    record_tool_usage,
)
from .errors import HandshakeMismatch, InvalidTransition, MessageValidationError, UnknownAgent
from .messaging import (
    MESSAGE_KIND,
    SHUTDOWN_REQUEST_KIND,
    SHUTDOWN_RESPONSE_KIND,
    MessageBus,
)
from .policy import review_shutdown_request, should_self_terminate
from .schemas import AgentStatus, TaskStatus
from .state_store import StateStore
from .tasks import (
    atomic_claim_task,
    atomic_complete_task,
    atomic_create_task,
    atomic_fail_task,
    atomic_requeue_task,
    get_task_summary,
    list_claimable,
)

logger = logging.getLogger(__name__)

__all__ = [
    'WorkerSession',
    'LeadSession',
]


class WorkerSession:
    """
    One worker's view of the coordination substrate.

    Args:
        directory: Working directory holding the shared state
        agent_id: Unique agent id used in the registry
        agent_type: Agent type label
        agent_name: Name used for task ownership and messaging; defaults to agent_id
        parent_mode: Mode of the spawning session
        lead_name: Participant that approves shutdowns; defaults to config.LEAD_NAME
    """

    def __init__(
        self,
        directory: str,
        agent_id: str,
        agent_type: str,
        agent_name: Optional[str] = None,
        parent_mode: str = "team",
        lead_name: Optional[str] = None,
        store: Optional[StateStore] = None,
        bus: Optional[MessageBus] = None,
    ):
        self.directory = directory
        self.agent_id = agent_id
        self.agent_type = agent_type
        self.agent_name = agent_name or agent_id
        self.parent_mode = parent_mode
        self.lead_name = lead_name or config.LEAD_NAME
        self.store = store or StateStore(directory)
        self.bus = bus or MessageBus(directory, self.agent_name)
        self.current_task_id: Optional[str] = None
        self.pending_shutdown_id: Optional[str] = None
        self.terminated = False

    def start(self, task_description: Optional[str] = None) -> Dict[str, Any]:
        return atomic_register_agent(
            self.directory, self.agent_id, self.agent_type, self.parent_mode,
            task_description=task_description, store=self.store,
        )

    def record_tool(self, tool_name: str, success: bool = True) -> bool:
        return record_tool_usage(self.directory, self.agent_id, tool_name, success, store=self.store)

    def next_task(self) -> Optional[Dict[str, Any]]:
        """
        Claim the lowest-id claimable task.

        Candidates come from one snapshot; a candidate that is no longer
        claimable by the time the claim is written is skipped.

        Returns:
            The claimed task, or None when nothing is claimable
        """
        snapshot = self.store.read()
        for candidate in list_claimable(snapshot, self.agent_name):
            try:
                task = atomic_claim_task(self.directory, candidate['task_id'], self.agent_name, store=self.store)
            except InvalidTransition as e:
                logger.debug(f"{self.agent_name} skipped task {candidate['task_id']}: {e}")
                continue
            self.current_task_id = task['task_id']
            return task
        return None

    def finish_task(self, task_id: str, summary: str = "") -> Dict[str, Any]:
        """Complete a claimed task and report it to the lead."""
        task = atomic_complete_task(self.directory, task_id, agent_id=self.agent_name,
                                    result=summary or None, store=self.store)
        if self.current_task_id == task_id:
            self.current_task_id = None
        self.bus.send_text(
            self.lead_name,
            f"Completed task #{task_id}: {summary}" if summary else f"Completed task #{task_id}",
            summary=f"Task #{task_id} complete",
        )
        return task

    def abandon_task(self, task_id: str, reason: str) -> Dict[str, Any]:
        """Fail a claimed task and report the failure to the lead."""
        task = atomic_fail_task(self.directory, task_id, agent_id=self.agent_name,
                                reason=reason, store=self.store)
        if self.current_task_id == task_id:
            self.current_task_id = None
        self.bus.send_text(
            self.lead_name,
            f"FAILED task #{task_id}: {reason}",
            summary=f"Task #{task_id} failed",
        )
        return task

    def maybe_request_shutdown(self) -> Optional[str]:
        """
        Ask the lead for permission to exit if the board looks drained.

        Returns:
            The request_id sent, or None if work remains
        """
        summary = get_task_summary(self.store.read())
        if not should_self_terminate(summary):
            logger.debug(f"{self.agent_name} stays up: {summary}")
            return None
        envelope = self.bus.request_shutdown(self.lead_name)
        self.pending_shutdown_id = envelope['request_id']
        return self.pending_shutdown_id

    def handle_shutdown_response(self, response: Dict[str, Any]) -> bool:
        """
        Act on the lead's answer to our shutdown request.

        On approval the agent is marked completed and the session terminates.
        On denial the agent stays running and should resume polling.

        Raises:
            HandshakeMismatch: If the response does not answer our request
        """
        approved = self.bus.resolve_shutdown_response(response)
        self.pending_shutdown_id = None
        if approved:
            self._mark_completed()
            logger.info(f"{self.agent_name} shutdown approved")
        else:
            logger.info(f"{self.agent_name} shutdown denied, resuming")
        return approved

    def _mark_completed(self) -> None:
        try:
            atomic_complete_agent(self.directory, self.agent_id, AgentStatus.COMPLETED.value, store=self.store)
        except UnknownAgent:
            logger.warning(f"{self.agent_id} was never registered, nothing to complete")
        self.terminated = True

    def _holds_active_task(self) -> bool:
        state = self.store.read()
        return any(
            t.get('status') == TaskStatus.IN_PROGRESS.value and t.get('claimed_by') == self.agent_name
            for t in state.get('tasks', [])
        )

    def handle_inbox(self) -> List[Dict[str, Any]]:
        """
        Process the inbox.

        Shutdown requests are honoured only from the lead, and approved only
        while this worker holds no in-progress task. Shutdown responses are
        resolved; a mismatched response is logged and ignored, never taken
        as approval.

        Returns:
            Plain messages for the executor to read
        """
        plain = []
        for message in self.bus.read_inbox():
            kind = message.get('kind')
            if kind == SHUTDOWN_REQUEST_KIND:
                if message.get('sender') != self.lead_name:
                    logger.warning(
                        f"{self.agent_name} ignored shutdown request from {message.get('sender')!r}, "
                        f"only {self.lead_name} may request shutdown"
                    )
                    continue
                approve = not self._holds_active_task()
                try:
                    self.bus.respond_to_shutdown(message, approve)
                except MessageValidationError as e:
                    logger.warning(f"{self.agent_name} ignored malformed shutdown request: {e}")
                    continue
                if approve:
                    self._mark_completed()
            elif kind == SHUTDOWN_RESPONSE_KIND:
                try:
                    self.handle_shutdown_response(message)
                except (HandshakeMismatch, MessageValidationError) as e:
                    logger.warning(f"{self.agent_name} ignored shutdown response: {e}")
            elif kind == MESSAGE_KIND:
                plain.append(message)
            else:
                logger.warning(f"{self.agent_name} ignored message of unknown kind {kind!r}")
        return plain


class LeadSession:
    """The lead's view: creates work, answers shutdown requests, renders the dashboard."""

    def __init__(
        self,
        directory: str,
        name: Optional[str] = None,
        store: Optional[StateStore] = None,
        bus: Optional[MessageBus] = None,
    ):
        self.directory = directory
        self.name = name or config.LEAD_NAME
        self.store = store or StateStore(directory)
        self.bus = bus or MessageBus(directory, self.name)

    def create_task(self, description: str, owner: Optional[str] = None,
                    blocked_by: Optional[List[str]] = None) -> Dict[str, Any]:
        return atomic_create_task(self.directory, description, owner=owner, blocked_by=blocked_by,
                                  actor=self.name, store=self.store)

    def requeue_task(self, task_id: str, owner: Optional[str] = None) -> Dict[str, Any]:
        return atomic_requeue_task(self.directory, task_id, owner=owner, actor=self.name, store=self.store)

    def request_worker_shutdown(self, worker_name: str) -> str:
        return self.bus.request_shutdown(worker_name)['request_id']

    def dashboard(self) -> str:
        return get_agent_dashboard(self.store.read())

    def handle_inbox(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Process the lead's inbox.

        Worker shutdown requests are answered after re-checking the board at
        the moment of handling. Responses to the lead's own requests are
        resolved.

        Returns:
            Dict with:
            - messages: plain messages from workers
            - shutdown_decisions: {request_id, worker, approve} for each answered request
            - shutdown_results: {request_id, worker, approved} for each resolved response
        """
        result: Dict[str, List[Dict[str, Any]]] = {
            'messages': [],
            'shutdown_decisions': [],
            'shutdown_results': [],
        }
        for message in self.bus.read_inbox():
            kind = message.get('kind')
            if kind == SHUTDOWN_REQUEST_KIND:
                approve = review_shutdown_request(self.store.read())
                try:
                    self.bus.respond_to_shutdown(message, approve)
                except MessageValidationError as e:
                    logger.warning(f"Lead ignored malformed shutdown request: {e}")
                    continue
                result['shutdown_decisions'].append({
                    'request_id': message['request_id'],
                    'worker': message.get('sender'),
                    'approve': approve,
                })
            elif kind == SHUTDOWN_RESPONSE_KIND:
                try:
                    approved = self.bus.resolve_shutdown_response(message)
                except (HandshakeMismatch, MessageValidationError) as e:
                    logger.warning(f"Lead ignored shutdown response: {e}")
                    continue
                result['shutdown_results'].append({
                    'request_id': message['request_id'],
                    'worker': message.get('sender'),
                    'approved': approved,
                })
            elif kind == MESSAGE_KIND:
                result['messages'].append(message)
        return result
