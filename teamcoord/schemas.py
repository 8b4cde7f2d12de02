"""Pydantic models for the shared coordination state document."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AgentStatus(str, Enum):
    """Agent lifecycle: RUNNING -> COMPLETED | FAILED"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """
    Task lifecycle.

    State Machine Flow:
        PENDING -> IN_PROGRESS -> COMPLETED
                               -> FAILED

    No transition re-enters PENDING. A failed task stays failed; the lead
    requeues the work as a new task.
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# Unknown fields are kept on every model so documents written by newer
# participants survive a round trip through older ones.
class _Record(BaseModel):
    model_config = ConfigDict(extra="allow")


class ToolUsageEntry(_Record):
    tool_name: str
    timestamp: str
    success: bool = True


class AgentRecord(_Record):
    agent_id: str
    agent_type: str = "unknown"
    started_at: str
    completed_at: Optional[str] = None
    parent_mode: str = "none"
    status: AgentStatus = AgentStatus.RUNNING
    task_description: Optional[str] = None
    tool_usage: List[ToolUsageEntry] = Field(default_factory=list)


class TaskRecord(_Record):
    task_id: str
    owner: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    blocked_by: List[str] = Field(default_factory=list)
    description: str = ""
    claimed_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Totals(_Record):
    spawned: int = 0
    completed: int = 0
    failed: int = 0


class SharedState(_Record):
    agents: List[AgentRecord] = Field(default_factory=list)
    tasks: List[TaskRecord] = Field(default_factory=list)
    totals: Totals = Field(default_factory=Totals)
    last_updated: Optional[str] = None
    revision: int = 0
    task_sequence: int = 0


def empty_state() -> Dict[str, Any]:
    """Return a freshly initialized state document as a plain dict."""
    return SharedState().model_dump(mode="json")


def normalize_state(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a raw document and fill in any missing fields.

    Raises:
        pydantic.ValidationError: If the document does not match the schema
    """
    return SharedState.model_validate(raw).model_dump(mode="json")
