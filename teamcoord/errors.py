"""
Error types raised by the coordination core.

CorruptState and UnknownAgent are normally absorbed where they occur.
InvalidTransition, LeadOnlyOperation and HandshakeMismatch reach the caller.
"""

from typing import Optional

__all__ = [
    'CoordinationError',
    'CorruptState',
    'UnknownAgent',
    'InvalidTransition',
    'UnknownTask',
    'LeadOnlyOperation',
    'HandshakeMismatch',
    'StaleRevision',
    'MessageValidationError',
]


class CoordinationError(Exception):
    """Base class for coordination errors"""


class CorruptState(CoordinationError):
    """
    The shared state document could not be read or failed schema validation.

    Attributes:
        path: Path of the state document
        reason: Human-readable description of the failure
    """

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupt state document {path}: {reason}")


class UnknownAgent(CoordinationError):
    """Raised when an operation names an agent that is not registered"""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} not found in registry")


class InvalidTransition(CoordinationError):
    """
    A task transition was requested from a status that does not permit it.

    Attributes:
        task_id: Task the transition targeted
        current: Status of the task when the transition was attempted
        target: Requested status
        reason: Why the transition was rejected
    """

    def __init__(self, task_id: str, current: Optional[str], target: str, reason: str = ""):
        self.task_id = task_id
        self.current = current
        self.target = target
        self.reason = reason
        message = f"Cannot move task {task_id} from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class UnknownTask(InvalidTransition):
    """Raised when a transition targets a task that does not exist"""

    def __init__(self, task_id: str, target: str):
        super().__init__(task_id, None, target, reason="task not found")


class LeadOnlyOperation(CoordinationError):
    """Raised when a participant other than the lead attempts a lead-only operation"""

    def __init__(self, operation: str, actor: str, lead: str):
        self.operation = operation
        self.actor = actor
        self.lead = lead
        super().__init__(f"{operation} is reserved for {lead}, attempted by {actor}")


class HandshakeMismatch(CoordinationError):
    """A shutdown response did not correlate with any outstanding request"""

    def __init__(self, request_id: Optional[str], reason: str = "no outstanding shutdown_request"):
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Shutdown response {request_id!r} rejected: {reason}")


class StaleRevision(CoordinationError):
    """
    Raised by a revision-guarded update when the document changed since it was read.

    Attributes:
        expected: Revision the caller based its decision on
        actual: Revision currently on disk
    """

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Revision mismatch: expected {expected}, got {actual}")


class MessageValidationError(CoordinationError, ValueError):
    """Raised when a message payload does not match its declared kind"""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid message field '{field}': {reason}")
