"""Domain models for agents, teams, the work queue and the activity log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from agent_crew.engine.errors import ConfigurationError

MESSAGE_CONTENT_MAX_CHARS = 10_000
RESULT_PREVIEW_CHARS = 500

_E = TypeVar("_E", bound=Enum)


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TeamRunStatus(str, Enum):
    """Durable team run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)
TERMINAL_TEAM_RUN_STATUSES = frozenset(
    {TeamRunStatus.COMPLETED, TeamRunStatus.FAILED, TeamRunStatus.CANCELLED},
)


class TaskPriority(str, Enum):
    """Queue priority; claims take urgent work first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK: dict[str, int] = {
    TaskPriority.URGENT.value: 0,
    TaskPriority.HIGH.value: 1,
    TaskPriority.MEDIUM.value: 2,
    TaskPriority.LOW.value: 3,
}


class ExecutionStatus(str, Enum):
    """Per-agent execution record states."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunnerStatus(str, Enum):
    """Runner registry states."""

    ACTIVE = "active"
    DEAD = "dead"


class MessageType(str, Enum):
    """Team activity log entry kinds."""

    DELEGATION = "delegation"
    RESULT = "result"
    SYSTEM = "system"
    HANDOFF = "handoff"
    BRAIN = "brain"
    WORKER_RESULT = "worker_result"
    REVISION_REQUEST = "revision_request"
    ACCEPTED = "accepted"
    DISCUSSION = "discussion"


class DelegationStatus(str, Enum):
    """Orchestrator delegation states."""

    RUNNING = "running"
    COMPLETED = "completed"
    REVISION_REQUESTED = "revision_requested"
    FAILED = "failed"


class TeamMode(str, Enum):
    """Team execution topology."""

    PIPELINE = "pipeline"
    ORCHESTRATOR = "orchestrator"
    COLLABORATION = "collaboration"


class OnFailure(str, Enum):
    """Pipeline step failure policy."""

    RETRY = "retry"
    STOP = "stop"
    SKIP = "skip"


class SpeakerSelection(str, Enum):
    """Collaboration speaker selection strategy."""

    ROUND_ROBIN = "round_robin"
    LLM_SELECT = "llm_select"
    FACILITATOR = "facilitator"


class TerminationCondition(str, Enum):
    """Collaboration early-stop rule."""

    MAX_TURNS = "max_turns"
    CONSENSUS = "consensus"
    FACILITATOR_DECISION = "facilitator_decision"


class FailureClass(str, Enum):
    """Normalized provider failure classes."""

    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    RATE_LIMITED = "rate_limited"
    PROVIDER_TRANSIENT = "provider_transient"
    NON_RETRYABLE = "non_retryable"


class BillingModel(str, Enum):
    """How a provider charges for usage."""

    PER_TOKEN = "per-token"
    SUBSCRIPTION_QUOTA = "subscription-quota"
    UNKNOWN = "unknown"


class UsageEventType(str, Enum):
    """Usage ledger event kinds."""

    TASK_EXECUTION = "task_execution"
    TEAM_RUN = "team_run"


class NotificationEvent(str, Enum):
    """Events delivered to output routes."""

    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TEAM_RUN_COMPLETED = "team_run.completed"
    TEAM_RUN_FAILED = "team_run.failed"


@dataclass(slots=True)
class TokenUsage:
    """Token counts and estimated cost of one or more LLM calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_estimate_usd: float = 0.0

    def add(self, other: TokenUsage) -> None:
        """Accumulate another usage into this one."""

        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens
        self.cost_estimate_usd += other.cost_estimate_usd

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cost_estimate_usd": self.cost_estimate_usd,
        }


@dataclass(frozen=True, slots=True)
class PipelineStep:
    """One ordered pipeline step."""

    agent_id: str
    step_name: str
    instructions: str = ""
    expected_output: str = ""
    on_failure: OnFailure = OnFailure.STOP
    max_retries: int = 1

    @property
    def max_attempts(self) -> int:
        if self.on_failure is OnFailure.RETRY:
            return self.max_retries + 1
        return 1


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    steps: tuple[PipelineStep, ...]
    auto_handoff: bool = True


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    brain_agent_id: str
    worker_agent_ids: tuple[str, ...]
    quality_threshold: float = 0.7
    max_delegation_depth: int = 3


@dataclass(frozen=True, slots=True)
class CollaborationConfig:
    agent_ids: tuple[str, ...]
    speaker_selection: SpeakerSelection = SpeakerSelection.ROUND_ROBIN
    max_turns: int = 10
    termination_condition: TerminationCondition = TerminationCondition.MAX_TURNS
    consensus_phrase: str = "I agree"
    facilitator_agent_id: str | None = None


TeamConfig = PipelineConfig | OrchestratorConfig | CollaborationConfig


def parse_team_config(mode: TeamMode | str, raw: dict[str, Any]) -> TeamConfig:
    """Validate a stored team config into its mode-specific dataclass."""

    try:
        team_mode = TeamMode(mode)
    except ValueError as error:
        raise ConfigurationError(f"Unknown team mode: {mode}") from error
    if not isinstance(raw, dict):
        raise ConfigurationError("Team config must be a JSON object.")

    if team_mode is TeamMode.PIPELINE:
        return _parse_pipeline_config(raw)
    if team_mode is TeamMode.ORCHESTRATOR:
        return _parse_orchestrator_config(raw)
    return _parse_collaboration_config(raw)


def _parse_pipeline_config(raw: dict[str, Any]) -> PipelineConfig:
    raw_steps = raw.get("steps") or []
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ConfigurationError("Pipeline config requires at least one step.")

    steps: list[PipelineStep] = []
    for index, item in enumerate(raw_steps):
        if not isinstance(item, dict):
            raise ConfigurationError(f"Pipeline step {index} must be an object.")
        agent_id = str(item.get("agent_id") or "").strip()
        if not agent_id:
            raise ConfigurationError(f"Pipeline step {index} has no agent_id.")
        max_retries = _as_int(item.get("max_retries", 1), f"steps[{index}].max_retries")
        if max_retries < 0:
            raise ConfigurationError(f"steps[{index}].max_retries must be >= 0.")
        steps.append(
            PipelineStep(
                agent_id=agent_id,
                step_name=str(item.get("step_name") or f"Step {index + 1}"),
                instructions=str(item.get("instructions") or ""),
                expected_output=str(item.get("expected_output") or ""),
                on_failure=_as_enum(
                    OnFailure,
                    item.get("on_failure", OnFailure.STOP.value),
                    f"steps[{index}].on_failure",
                ),
                max_retries=max_retries,
            ),
        )
    return PipelineConfig(steps=tuple(steps), auto_handoff=bool(raw.get("auto_handoff", True)))


def _parse_orchestrator_config(raw: dict[str, Any]) -> OrchestratorConfig:
    brain_agent_id = str(raw.get("brain_agent_id") or "").strip()
    if not brain_agent_id:
        raise ConfigurationError("Orchestrator config requires brain_agent_id.")
    workers = _as_id_tuple(raw.get("worker_agent_ids"), "worker_agent_ids")
    if not workers:
        raise ConfigurationError("Orchestrator config requires at least one worker agent.")

    quality_threshold = _as_float(raw.get("quality_threshold", 0.7), "quality_threshold")
    if not 0 <= quality_threshold <= 1:
        raise ConfigurationError("quality_threshold must be between 0 and 1.")
    max_depth = _as_int(raw.get("max_delegation_depth", 3), "max_delegation_depth")
    if max_depth < 1:
        raise ConfigurationError("max_delegation_depth must be >= 1.")
    return OrchestratorConfig(
        brain_agent_id=brain_agent_id,
        worker_agent_ids=workers,
        quality_threshold=quality_threshold,
        max_delegation_depth=max_depth,
    )


def _parse_collaboration_config(raw: dict[str, Any]) -> CollaborationConfig:
    agent_ids = _as_id_tuple(raw.get("agent_ids"), "agent_ids")
    if len(agent_ids) < 2:  # noqa: PLR2004
        raise ConfigurationError("Collaboration requires at least 2 agents.")
    max_turns = _as_int(raw.get("max_turns", 10), "max_turns")
    if max_turns < 1:
        raise ConfigurationError("max_turns must be >= 1.")
    facilitator = str(raw.get("facilitator_agent_id") or "").strip() or None
    return CollaborationConfig(
        agent_ids=agent_ids,
        speaker_selection=_as_enum(
            SpeakerSelection,
            raw.get("speaker_selection", SpeakerSelection.ROUND_ROBIN.value),
            "speaker_selection",
        ),
        max_turns=max_turns,
        termination_condition=_as_enum(
            TerminationCondition,
            raw.get("termination_condition", TerminationCondition.MAX_TURNS.value),
            "termination_condition",
        ),
        consensus_phrase=str(raw.get("consensus_phrase") or "I agree"),
        facilitator_agent_id=facilitator,
    )


def _as_int(value: object, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}.")
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as error:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}.") from error


def _as_float(value: object, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number, got {value!r}.")
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as error:
        raise ConfigurationError(f"{name} must be a number, got {value!r}.") from error


def _as_id_tuple(value: object, name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigurationError(f"{name} must be a list of agent ids.")
    return tuple(str(item).strip() for item in value if str(item).strip())


def _as_enum(enum_type: type[_E], value: object, name: str) -> _E:
    try:
        return enum_type(value)
    except ValueError as error:
        allowed = ", ".join(str(member.value) for member in enum_type)
        raise ConfigurationError(f"{name} must be one of: {allowed}; got {value!r}.") from error


@dataclass(slots=True)
class AgentCreate:
    """Input payload for registering an agent."""

    name: str
    provider: str
    model: str
    description: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    tools: tuple[str, ...] = ()


@dataclass(slots=True)
class AgentView:
    id: str
    workspace_id: str
    name: str
    description: str | None
    provider: str
    model: str
    system_prompt: str | None
    temperature: float | None
    tools: tuple[str, ...]
    created_at: datetime


@dataclass(slots=True)
class CustomToolCreate:
    """Input payload for registering a webhook-backed tool."""

    name: str
    webhook_url: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    webhook_headers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CustomToolView:
    id: str
    workspace_id: str
    name: str
    description: str
    parameters: dict[str, Any]
    webhook_url: str
    webhook_headers: dict[str, str]


@dataclass(slots=True)
class TeamCreate:
    name: str
    mode: TeamMode
    config: dict[str, Any]


@dataclass(slots=True)
class TeamView:
    id: str
    workspace_id: str
    name: str
    mode: TeamMode
    config: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a single-agent task."""

    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_agent_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and executor logic."""

    id: str
    workspace_id: str
    title: str
    description: str
    status: TaskStatus
    priority: TaskPriority
    assigned_agent_id: str | None
    result: str | None
    error: str | None
    metadata: dict[str, Any]
    claimed_by_runner: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    failure_class: FailureClass | None = None


@dataclass(slots=True)
class AgentExecutionView:
    id: str
    task_id: str
    agent_id: str
    runner_id: str | None
    status: ExecutionStatus
    result: str | None
    error: str | None
    usage: TokenUsage
    started_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class TaskDetails:
    """Task with its execution records."""

    task: TaskView
    executions: list[AgentExecutionView]


@dataclass(slots=True)
class TeamRunCreate:
    team_id: str
    input_task: str
    run_id: str | None = None


@dataclass(slots=True)
class TeamRunView:
    """Readable team run view for CLI and executor logic."""

    id: str
    team_id: str
    workspace_id: str
    status: TeamRunStatus
    input_task: str
    output: str | None
    current_step_idx: int | None
    delegation_depth: int
    tokens_total: int
    cost_estimate_usd: float
    error_message: str | None
    claimed_by_runner: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    failure_class: FailureClass | None = None


@dataclass(slots=True)
class TeamMessageWrite:
    """Activity log entry to append."""

    message_type: MessageType
    content: str
    sender_agent_id: str | None = None
    receiver_agent_id: str | None = None
    step_idx: int | None = None
    tokens_used: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TeamMessageView:
    id: int
    run_id: str
    sender_agent_id: str | None
    receiver_agent_id: str | None
    message_type: MessageType
    content: str
    step_idx: int | None
    tokens_used: int
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class DelegationView:
    id: str
    run_id: str
    worker_agent_id: str
    instruction: str
    worker_output: str | None
    status: DelegationStatus
    revision_count: int
    revision_feedback: str | None
    quality_score: float | None
    accepted: bool
    created_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class TeamRunDetails:
    """Team run with its activity log and delegations."""

    run: TeamRunView
    messages: list[TeamMessageView]
    delegations: list[DelegationView]


@dataclass(slots=True)
class RunnerView:
    id: str
    instance_name: str
    status: RunnerStatus
    max_concurrency: int
    current_load: int
    last_heartbeat: datetime
    started_at: datetime


@dataclass(slots=True)
class RecoverySummary:
    """Outcome of one stale-claim recovery pass."""

    runners_marked_dead: int = 0
    tasks_requeued: int = 0
    team_runs_requeued: int = 0
    executions_failed: int = 0


@dataclass(slots=True)
class UsageRecordWrite:
    """One usage ledger entry."""

    workspace_id: str
    event_type: UsageEventType
    usage: TokenUsage
    provider: str
    model: str
    agent_id: str | None = None
    task_id: str | None = None
    team_run_id: str | None = None
    step_index: int | None = None
    step_name: str | None = None


@dataclass(slots=True)
class OutputRouteCreate:
    name: str
    url: str
    events: tuple[str, ...] = ()
    secret: str | None = None


@dataclass(slots=True)
class OutputRouteView:
    id: str
    workspace_id: str
    name: str
    destination_type: str
    url: str
    secret: str | None
    events: tuple[str, ...]
    is_active: bool


@dataclass(slots=True)
class WebhookDeliveryWrite:
    route_id: str
    subject_id: str
    event: str
    status: str
    status_code: int | None
    error: str | None
    attempts: int
    payload: dict[str, Any]


def truncate_message(content: str, limit: int = MESSAGE_CONTENT_MAX_CHARS) -> str:
    """Cap activity log content length."""

    if len(content) <= limit:
        return content
    return content[:limit]
