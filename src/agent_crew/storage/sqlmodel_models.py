"""SQLModel ORM tables for the agent-crew store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Agent(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    name: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    provider: str
    model: str
    system_prompt: str | None = Field(default=None, sa_column=Column(Text))
    temperature: float | None = Field(default=None, sa_column=Column(Float))
    tools_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CustomTool(SQLModel, table=True):
    __tablename__ = "custom_tools"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_custom_tools_workspace_name"),
    )

    id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    name: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    parameters_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    webhook_url: str
    webhook_headers_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProviderCredential(SQLModel, table=True):
    __tablename__ = "provider_credentials"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("workspace_id", "provider", name="uq_provider_credentials_scope"),
    )

    id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    provider: str
    encrypted_key: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Team(SQLModel, table=True):
    __tablename__ = "teams"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    name: str
    mode: str
    config_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Runner(SQLModel, table=True):
    __tablename__ = "runners"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    instance_name: str
    status: str = Field(index=True)
    max_concurrency: int = Field(default=3)
    current_load: int = Field(default=0)
    last_heartbeat: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "status", "priority", "created_at"),)

    id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: str = Field(default="medium")
    assigned_agent_id: str | None = Field(default=None, index=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = None
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    claimed_by_runner: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class AgentExecution(SQLModel, table=True):
    __tablename__ = "agent_executions"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    agent_id: str = Field(index=True)
    runner_id: str | None = None
    status: str = Field(index=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    prompt_tokens: int = Field(default=0)
    completion_tokens: int = Field(default=0)
    total_tokens: int = Field(default=0)
    cost_estimate_usd: float = Field(default=0.0)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class TeamRun(SQLModel, table=True):
    __tablename__ = "team_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_team_runs_queue", "status", "created_at"),)

    id: str = Field(primary_key=True)
    team_id: str = Field(
        sa_column=Column(
            ForeignKey("teams.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    workspace_id: str = Field(index=True)
    status: str = Field(index=True)
    input_task: str = Field(sa_column=Column(Text, nullable=False))
    output: str | None = Field(default=None, sa_column=Column(Text))
    current_step_idx: int | None = None
    delegation_depth: int = Field(default=0)
    tokens_total: int = Field(default=0)
    cost_estimate_usd: float = Field(default=0.0)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = None
    claimed_by_runner: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class TeamMessage(SQLModel, table=True):
    __tablename__ = "team_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_team_messages_run_time", "run_id", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("team_runs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sender_agent_id: str | None = None
    receiver_agent_id: str | None = None
    message_type: str = Field(index=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    step_idx: int | None = None
    tokens_used: int = Field(default=0)
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Delegation(SQLModel, table=True):
    __tablename__ = "delegations"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("team_runs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    worker_agent_id: str
    instruction: str = Field(sa_column=Column(Text, nullable=False))
    worker_output: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    revision_count: int = Field(default=0)
    revision_feedback: str | None = Field(default=None, sa_column=Column(Text))
    quality_score: float | None = Field(default=None, sa_column=Column(Float))
    accepted: bool = Field(default=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class UsageRecord(SQLModel, table=True):
    __tablename__ = "usage_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_usage_records_scope_time", "workspace_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    workspace_id: str
    event_type: str = Field(index=True)
    tokens_used: int = Field(default=0)
    cost_usd: float = Field(default=0.0)
    agent_id: str | None = None
    task_id: str | None = Field(default=None, index=True)
    team_run_id: str | None = Field(default=None, index=True)
    provider: str
    model: str
    billing_model: str
    step_index: int | None = None
    step_name: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OutputRoute(SQLModel, table=True):
    __tablename__ = "output_routes"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    name: str
    destination_type: str = Field(default="http")
    url: str
    secret: str | None = None
    events_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    is_active: bool = Field(default=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WebhookDelivery(SQLModel, table=True):
    __tablename__ = "webhook_deliveries"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    route_id: str = Field(
        sa_column=Column(
            ForeignKey("output_routes.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    subject_id: str = Field(index=True)
    event: str
    status: str
    status_code: int | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    attempts: int = Field(default=0)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
