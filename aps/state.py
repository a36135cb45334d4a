"""APS State: the records passed between the orchestrator and its collaborators."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, NotRequired, TypedDict

StageStatus = Literal["pending", "processing", "completed", "failed"]
ProjectStatus = Literal["draft", "planning", "completed"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StageDescriptor:
    """One entry of the fixed stage list. Supplied as configuration, never mutated."""

    type: str  # Unique key, e.g. "ux".
    name: str
    description: str
    system_prompt: str
    schema: dict


@dataclass
class StageResult:
    """Latest result for one (project, stage type)."""

    project_id: str
    stage_type: str
    status: StageStatus = "pending"
    output: Any = None
    model_used: str | None = None
    attempts: int = 0
    id: str | None = None  # Assigned by the store on insert.
    created_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None


class ProjectContext(TypedDict):
    """Read-only inputs shared by every stage of a run."""

    description: str
    competitor_links: list[str]
    competitor_reviews: list[str]


class Project(TypedDict):
    id: str
    name: str
    description: str
    competitor_links: list[str]
    competitor_reviews: list[str]
    status: ProjectStatus


class LedgerEntry(TypedDict):
    key: str
    value: str
    reason: str


class ChecklistItem(TypedDict):
    check: str
    passed: bool
    details: NotRequired[str]


class RevisionRequest(TypedDict):
    stage: str  # Target stage type.
    request: str


class ChecklistResult(TypedDict):
    status: Literal["pass", "fail"]
    items: list[ChecklistItem]
    fail_items: list[str]
    revision_requests: list[RevisionRequest]


class ConvergenceState(TypedDict):
    iteration: int  # Completed revision cycles. Starts at 0.
    severity: float  # Last critic severity score (0..1).
    outstanding: list[RevisionRequest]  # Critic requests not yet re-run.


class OrchestrationProgress(TypedDict):
    current_stage: str
    completed_stages: list[str]
    total_stages: int
    error: NotRequired[str]


def project_context(project: Project) -> ProjectContext:
    """Derive the immutable per-run context from a stored project."""
    return {
        "description": project["description"],
        "competitor_links": list(project.get("competitor_links") or []),
        "competitor_reviews": list(project.get("competitor_reviews") or []),
    }
