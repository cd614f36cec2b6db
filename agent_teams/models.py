"""Document shapes for everything persisted under the storage root."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

TEAM_NAME_PATTERN = r"^[A-Za-z0-9_-]+$"
# Ids double as file names.
ID_PATTERN = TEAM_NAME_PATTERN

TaskStatus = Literal["pending", "in_progress", "completed"]
TaskPriority = Literal["high", "normal", "low"]
AgentStatus = Literal["spawning", "active", "idle", "inactive", "shutting_down", "terminated"]
MessageType = Literal["plain", "idle", "task_assignment", "shutdown_request", "shutdown_approved"]
Topology = Literal["flat", "hierarchical"]
Operator = Literal["eq", "neq", "gt", "lt", "gte", "lte"]
HeartbeatSource = Literal["tool", "sdk_session_idle", "sdk_session_updated", "sdk_tool_execute"]
DispatchEventType = Literal[
    "task.created",
    "task.claimed",
    "task.completed",
    "task.unblocked",
    "agent.spawned",
    "agent.idle",
    "agent.terminated",
    "session.idle",
]

DISPATCH_EVENT_TYPES = (
    "task.created",
    "task.claimed",
    "task.completed",
    "task.unblocked",
    "agent.spawned",
    "agent.idle",
    "agent.terminated",
    "session.idle",
)


class Document(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TeamMember(Document):
    agent_id: str = Field(min_length=1, pattern=ID_PATTERN)
    agent_name: str = Field(min_length=1)
    agent_type: str = Field(min_length=1)
    joined_at: datetime


class RoleDefinition(Document):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    allowed_tools: Optional[List[str]] = None
    denied_tools: Optional[List[str]] = None


class WorkflowConfig(Document):
    enabled: bool = False
    task_threshold: int = Field(default=3, ge=1)
    worker_ratio: float = Field(default=2.0, gt=0)
    cooldown_seconds: int = Field(default=300, ge=0)
    last_suggestion_at: Optional[datetime] = None


# Dispatch conditions and actions are tagged by ``type``.


class SimpleMatchCondition(Document):
    type: Literal["simple_match"] = "simple_match"
    field: str = Field(min_length=1)
    operator: Operator
    value: Union[bool, int, float, str, None] = None


class ResourceCountCondition(Document):
    type: Literal["resource_count"] = "resource_count"
    resource: Literal["unblocked_tasks", "active_agents"]
    operator: Operator
    value: Union[int, float]


DispatchCondition = Annotated[
    Union[SimpleMatchCondition, ResourceCountCondition],
    Field(discriminator="type"),
]


class AssignTaskAction(Document):
    type: Literal["assign_task"] = "assign_task"


class NotifyLeaderAction(Document):
    type: Literal["notify_leader"] = "notify_leader"
    message: Optional[str] = None


class LogAction(Document):
    type: Literal["log"] = "log"
    message: Optional[str] = None


DispatchAction = Annotated[
    Union[AssignTaskAction, NotifyLeaderAction, LogAction],
    Field(discriminator="type"),
]


class DispatchRule(Document):
    id: str = Field(min_length=1)
    event_type: DispatchEventType
    condition: Optional[DispatchCondition] = None
    action: DispatchAction
    priority: int = 0
    enabled: bool = True


class DispatchLogEntry(Document):
    id: str
    timestamp: datetime
    rule_id: str
    event_type: DispatchEventType
    success: bool
    details: str = ""


class DispatchEvent(Document):
    id: str
    type: DispatchEventType
    team: str
    timestamp: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)


class TeamConfig(Document):
    name: str = Field(min_length=1, pattern=TEAM_NAME_PATTERN)
    created: datetime
    leader: str = Field(min_length=1, pattern=ID_PATTERN)
    members: List[TeamMember] = Field(min_length=1)
    topology: Optional[Topology] = None
    roles: Optional[List[RoleDefinition]] = None
    workflow: Optional[WorkflowConfig] = None
    shutdown_approvals: List[str] = Field(default_factory=list)
    dispatch_rules: List[DispatchRule] = Field(default_factory=list)
    dispatch_log: List[DispatchLogEntry] = Field(default_factory=list)

    def member_ids(self) -> List[str]:
        return [member.agent_id for member in self.members]


class TeamSummary(BaseModel):
    name: str
    leader: str
    member_count: int
    created: datetime


class Task(Document):
    id: str = Field(min_length=1, pattern=ID_PATTERN)
    title: str = "Untitled Task"
    description: Optional[str] = None
    priority: TaskPriority = "normal"
    status: TaskStatus = "pending"
    created_at: datetime
    updated_at: Optional[datetime] = None
    owner: Optional[str] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    dependencies: List[str] = Field(default_factory=list)
    blocks: List[str] = Field(default_factory=list)
    warning: Optional[str] = None


class Message(Document):
    sender: str = Field(min_length=1)
    recipient: str = Field(min_length=1)
    body: str
    type: MessageType = "plain"
    timestamp: datetime
    read: bool = False
    recipients: Optional[List[str]] = None


Inbox = TypeAdapter(List[Message])


class AgentState(Document):
    id: str = Field(min_length=1, pattern=ID_PATTERN)
    name: str = Field(min_length=1)
    team: str = Field(min_length=1)
    role: str = "worker"
    status: AgentStatus = "spawning"
    created_at: datetime
    updated_at: Optional[datetime] = None
    heartbeat_ts: datetime
    consecutive_misses: int = Field(default=0, ge=0)
    model: Optional[str] = None
    session_id: Optional[str] = None
    terminated_at: Optional[datetime] = None
    last_error: Optional[str] = None


class TemplateTask(Document):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    priority: TaskPriority = "normal"


class TeamTemplate(Document):
    name: str = Field(min_length=1, pattern=TEAM_NAME_PATTERN)
    description: Optional[str] = None
    topology: Topology = "flat"
    roles: List[RoleDefinition] = Field(min_length=1)
    workflow: Optional[WorkflowConfig] = None
    default_tasks: List[TemplateTask] = Field(default_factory=list)
    created_at: datetime


class TemplateSummary(BaseModel):
    name: str
    description: Optional[str] = None
    source: Literal["builtin", "stored"]
