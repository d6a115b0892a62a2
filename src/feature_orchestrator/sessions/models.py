"""
Session Models - Pydantic schemas for feature sessions.

A session tracks one feature through the seven-stage pipeline:
	1 discovery -> 2 planning -> 3 implementing -> 4 pr_creation
	-> 5 pr_review -> 6 final_approval -> 7 completed

current_stage is kept separately from status so queued and paused
sessions remember the stage they resume at.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


def utc_now() -> str:
	return datetime.now(timezone.utc).isoformat()


class SessionStatus(str, Enum):
	"""Lifecycle status of a session."""
	QUEUED = "queued"
	DISCOVERY = "discovery"
	PLANNING = "planning"
	IMPLEMENTING = "implementing"
	PR_CREATION = "pr_creation"
	PR_REVIEW = "pr_review"
	FINAL_APPROVAL = "final_approval"
	COMPLETED = "completed"
	PAUSED = "paused"
	FAILED = "failed"


STAGE_STATUS: dict[int, SessionStatus] = {
	1: SessionStatus.DISCOVERY,
	2: SessionStatus.PLANNING,
	3: SessionStatus.IMPLEMENTING,
	4: SessionStatus.PR_CREATION,
	5: SessionStatus.PR_REVIEW,
	6: SessionStatus.FINAL_APPROVAL,
	7: SessionStatus.COMPLETED,
}
FIRST_STAGE = 1
FINAL_STAGE = 7

# Statuses occupying the project's single active slot
ACTIVE_STATUSES = frozenset(STAGE_STATUS[stage] for stage in range(1, FINAL_STAGE))
TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})


def status_for_stage(stage: int) -> SessionStatus:
	"""Status a running session has at the given stage."""
	return STAGE_STATUS[stage]


class BackoutAction(str, Enum):
	"""How a session leaves the pipeline."""
	PAUSE = "pause"
	ABANDON = "abandon"


class BackoutReason(str, Enum):
	USER_REQUESTED = "user_requested"
	BLOCKED = "blocked"
	DEPRIORITIZED = "deprioritized"
	OTHER = "other"


class FinalApprovalAction(str, Enum):
	"""Outcomes of the final approval stage."""
	MERGE = "merge"
	PLAN_CHANGES = "plan_changes"
	RE_REVIEW = "re_review"


class AcceptanceCriterion(BaseModel):
	"""A user-supplied acceptance criterion."""
	text: str
	checked: bool = False
	type: Literal["automated", "manual"] = "manual"


class UserPreferences(BaseModel):
	"""How the assistant should weigh decisions for this session."""
	risk_comfort: Literal["low", "medium", "high"] = "medium"
	speed_vs_quality: Literal["speed", "balanced", "quality"] = "balanced"
	scope_flexibility: Literal["fixed", "flexible", "open"] = "flexible"
	detail_level: Literal["minimal", "standard", "detailed"] = "standard"
	autonomy_level: Literal["guided", "collaborative", "autonomous"] = "collaborative"


QueueInsertPosition = Union[Literal["front", "end"], int]


class Session(BaseModel):
	"""A feature-development session."""
	version: str = Field(default="1.0")
	id: str = Field(description="Unique session id (uuid4)")
	project_id: str = Field(description="Hash of the project path")
	feature_id: str = Field(description="Slug of the title, unique per project")
	title: str
	feature_description: str = Field(default="")
	project_path: str
	acceptance_criteria: list[AcceptanceCriterion] = Field(default_factory=list)
	affected_files: list[str] = Field(default_factory=list)
	technical_notes: str = Field(default="")
	base_branch: str = Field(default="main")
	feature_branch: str = Field(default="")
	base_commit_sha: str = Field(default="")

	status: SessionStatus = Field(default=SessionStatus.DISCOVERY)
	current_stage: int = Field(default=FIRST_STAGE, ge=FIRST_STAGE, le=FINAL_STAGE)
	replanning_count: int = Field(default=0)

	assistant_session_id: Optional[str] = Field(default=None)
	plan_file_path: Optional[str] = Field(default=None)
	current_plan_version: int = Field(default=0)
	pr_url: Optional[str] = Field(default=None)

	queue_position: Optional[int] = Field(default=None, description="1-based, set only while queued")
	queued_at: Optional[str] = Field(default=None)
	data_version: int = Field(default=1, description="Optimistic concurrency counter")

	backout_reason: Optional[BackoutReason] = Field(default=None)
	backout_timestamp: Optional[str] = Field(default=None)

	plan_validation_context: Optional[str] = Field(default=None)
	plan_validation_attempts: int = Field(default=0)

	# Plan revision tracking, reset when final approval sends the session back to planning
	review_feedback: Optional[str] = Field(default=None)
	is_plan_modified: bool = Field(default=False)
	modified_step_ids: list[str] = Field(default_factory=list)
	added_step_ids: list[str] = Field(default_factory=list)
	removed_step_ids: list[str] = Field(default_factory=list)

	preferences: Optional[UserPreferences] = Field(default=None)
	created_at: str = Field(default_factory=utc_now)
	updated_at: str = Field(default_factory=utc_now)

	@property
	def key(self) -> str:
		return f"{self.project_id}/{self.feature_id}"

	@property
	def is_active(self) -> bool:
		return self.status in ACTIVE_STATUSES

	@property
	def is_terminal(self) -> bool:
		return self.status in TERMINAL_STATUSES


# Never changed by updates or edits
PROTECTED_FIELDS = frozenset({"id", "project_id", "feature_id", "version", "created_at"})

# Lifecycle-owned fields; changed only through transitions
LIFECYCLE_FIELDS = frozenset({
	"status", "current_stage", "queue_position", "queued_at", "data_version",
	"backout_reason", "backout_timestamp",
})

# Fields a user may change while a session waits in the queue
EDITABLE_QUEUED_FIELDS = frozenset({
	"title", "feature_description", "acceptance_criteria", "affected_files",
	"technical_notes", "base_branch", "preferences",
})


class CreateSessionInput(BaseModel):
	"""Request to start a new feature session."""
	title: str
	project_path: str
	feature_description: str = ""
	acceptance_criteria: list[AcceptanceCriterion] = Field(default_factory=list)
	affected_files: list[str] = Field(default_factory=list)
	technical_notes: str = ""
	base_branch: Optional[str] = None
	preferences: Optional[UserPreferences] = None
	insert_at_position: QueueInsertPosition = Field(
		default="end",
		description="Queue position if the project already has an active session",
	)
