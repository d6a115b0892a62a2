"""
Session Manager - Lifecycle state machine and per-project queue.

Responsibilities:
- Creating sessions (active immediately, or queued behind the active one)
- Stage transitions gated by the transition table and its preconditions
- Backout (pause / abandon), resume, queue promotion and reordering
- Optimistic-concurrency edits of queued sessions
- Plan storage, validation and approval
- Running the assistant under the per-session admission lock and
  applying what its output reports

Invariants kept after every completed operation, per project:
- at most one session is active (status discovery .. final_approval)
- queued sessions have queue positions 1..N with no gaps or duplicates

Mutations of one project are serialized by a per-project asyncio.Lock.
Every precondition is checked before anything is written.
"""

import asyncio
import hashlib
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from ..assistant import AssistantProcess, AssistantResult
from ..config import Config, get_config
from ..events import EventBroadcaster
from ..markers.composable import has_composable_plan_markers, parse_composable_plan
from ..markers.parser import OutputParser, ParsedOutput, get_output_parser
from ..markers.sanitize import sanitize_feedback, sanitize_session_fields
from ..plans.completion import PlanCompleteness, check_plan_completeness
from ..plans.content_hash import stamp_content_hash
from ..plans.migration import read_plan_with_migration
from ..plans.models import ComposablePlan, PlanStep, StepStatus, utc_now
from ..plans.validator import PlanValidationResult, PlanValidator
from ..storage import FileStorage
from .errors import (
	InvalidTransitionError,
	PreconditionError,
	SessionExistsError,
	SessionNotFoundError,
	SessionNotQueuedError,
	VersionConflictError,
)
from .lock import SpawnLockRegistry
from .models import (
	EDITABLE_QUEUED_FIELDS,
	LIFECYCLE_FIELDS,
	PROTECTED_FIELDS,
	BackoutAction,
	BackoutReason,
	CreateSessionInput,
	FinalApprovalAction,
	QueueInsertPosition,
	Session,
	SessionStatus,
	status_for_stage,
)
from .transitions import (
	STAGE_ENTRY_PRECONDITIONS,
	LifecycleAction,
	Precondition,
	SideEffect,
	Transition,
	lookup,
	manual_transition,
)

logger = logging.getLogger(__name__)

PROJECTS_INDEX = "projects.json"
MAX_FEATURE_ID_LENGTH = 64


@dataclass
class BackoutResult:
	session: Session
	promoted_session: Optional[Session] = None


@dataclass
class ResumeResult:
	session: Session
	was_queued: bool = False


@dataclass
class AssistantRun:
	"""Result of one locked assistant invocation."""
	result: AssistantResult
	parsed: ParsedOutput


class SessionManager:
	"""
	Owns session state for every project under one storage root.

	The admission lock registry is created with the manager (unless one is
	passed in) and torn down by close().
	"""

	def __init__(
		self,
		storage: FileStorage,
		config: Optional[Config] = None,
		broadcaster: Optional[EventBroadcaster] = None,
		locks: Optional[SpawnLockRegistry] = None,
		assistant: Optional[AssistantProcess] = None,
		parser: Optional[OutputParser] = None,
		validator: Optional[PlanValidator] = None,
	):
		self.config = config or Config()
		self.storage = storage
		self.events = broadcaster or EventBroadcaster()
		self.locks = locks or SpawnLockRegistry(timeout_seconds=self.config.lock_timeout_minutes * 60)
		self.assistant = assistant or AssistantProcess(
			command=self.config.assistant_command,
			timeout=self.config.assistant_timeout,
		)
		self.parser = parser or get_output_parser()
		self.validator = validator or PlanValidator(min_description_length=self.config.min_description_length)
		self._project_locks: dict[str, asyncio.Lock] = {}

	def close(self) -> None:
		"""Release every admission lock held through this manager and drop the project locks."""
		self.locks.release_all()
		self._project_locks.clear()

	# ------------------------------------------------------------------
	# Identity and paths
	# ------------------------------------------------------------------

	@staticmethod
	def get_project_id(project_path: str) -> str:
		return hashlib.sha256(project_path.encode("utf-8")).hexdigest()[:32]

	@staticmethod
	def get_feature_id(title: str) -> str:
		"""Slug of the title: lowercase alphanumerics joined by single dashes.

		Raises:
			PreconditionError: If the title has no alphanumeric characters
		"""
		slug = re.sub(r"[^a-z0-9\s-]", "", title.lower())
		slug = re.sub(r"\s+", "-", slug)
		slug = re.sub(r"-+", "-", slug).strip("-")
		if not slug:
			raise PreconditionError("Title must contain at least one alphanumeric character")
		return slug[:MAX_FEATURE_ID_LENGTH].rstrip("-")

	@staticmethod
	def _session_dir(project_id: str, feature_id: str) -> str:
		return f"{project_id}/{feature_id}"

	def _session_path(self, project_id: str, feature_id: str) -> str:
		return f"{self._session_dir(project_id, feature_id)}/session.json"

	def _plan_path(self, project_id: str, feature_id: str) -> str:
		return f"{self._session_dir(project_id, feature_id)}/plan.json"

	@staticmethod
	def _index_path(project_id: str) -> str:
		return f"{project_id}/index.json"

	def _project_lock(self, project_id: str) -> asyncio.Lock:
		if project_id not in self._project_locks:
			self._project_locks[project_id] = asyncio.Lock()
		return self._project_locks[project_id]

	# ------------------------------------------------------------------
	# Persistence helpers (callers hold the project lock)
	# ------------------------------------------------------------------

	async def _read(self, path: str) -> Any:
		return await asyncio.to_thread(self.storage.read_json, path)

	async def _write(self, path: str, data: Any) -> None:
		await asyncio.to_thread(self.storage.write_json, path, data)

	async def _load_session(self, project_id: str, feature_id: str) -> Optional[Session]:
		data = await self._read(self._session_path(project_id, feature_id))
		if data is None:
			return None
		return Session.model_validate(data)

	async def _require_session(self, project_id: str, feature_id: str) -> Session:
		session = await self._load_session(project_id, feature_id)
		if session is None:
			raise SessionNotFoundError(f"Session not found: {project_id}/{feature_id}")
		return session

	async def _load_project_sessions(self, project_id: str) -> list[Session]:
		index = await self._read(self._index_path(project_id)) or []
		sessions = []
		for feature_id in index:
			session = await self._load_session(project_id, feature_id)
			if session is not None:
				sessions.append(session)
		return sessions

	async def _save(self, session: Session) -> Session:
		"""Write a session, bumping its data_version."""
		saved = session.model_copy(update={
			"data_version": session.data_version + 1,
			"updated_at": utc_now(),
		})
		await self._write(self._session_path(saved.project_id, saved.feature_id), saved.model_dump(mode="json"))
		return saved

	async def _register(self, session: Session) -> None:
		index = await self._read(self._index_path(session.project_id)) or []
		if session.feature_id not in index:
			index.append(session.feature_id)
			await self._write(self._index_path(session.project_id), index)

		projects = await self._read(PROJECTS_INDEX) or {}
		projects[session.project_id] = {"project_path": session.project_path, "updated_at": utc_now()}
		await self._write(PROJECTS_INDEX, projects)

	# ------------------------------------------------------------------
	# Queue helpers (pure; operate on loaded sessions)
	# ------------------------------------------------------------------

	@staticmethod
	def _queued(sessions: list[Session]) -> list[Session]:
		queued = [s for s in sessions if s.status == SessionStatus.QUEUED]
		return sorted(queued, key=lambda s: (s.queue_position or 0, s.queued_at or "", s.created_at))

	@staticmethod
	def _active(sessions: list[Session]) -> Optional[Session]:
		return next((s for s in sessions if s.is_active), None)

	@staticmethod
	def _renumber(ordered: list[Session]) -> list[Session]:
		"""Assign positions 1..N in the given order. Returns only sessions that changed."""
		changed = []
		for position, session in enumerate(ordered, start=1):
			if session.queue_position != position:
				changed.append(session.model_copy(update={"queue_position": position}))
		return changed

	@staticmethod
	def _activate(session: Session) -> Session:
		return session.model_copy(update={
			"status": status_for_stage(session.current_stage),
			"queue_position": None,
			"queued_at": None,
		})

	def _promote_next(self, remaining: list[Session]) -> tuple[Optional[Session], list[Session]]:
		"""Activate the lowest-position queued session and close the gap it leaves.

		Returns:
			(promoted session or None, other queued sessions whose position changed)
		"""
		queued = self._queued(remaining)
		if not queued:
			return None, []
		transition = lookup(queued[0].status, LifecycleAction.PROMOTE)
		if transition is None:
			return None, []
		promoted = self._activate(queued[0])
		return promoted, self._renumber(queued[1:])

	async def _save_all(self, sessions: list[Session]) -> list[Session]:
		return [await self._save(s) for s in sessions]

	def _emit_queue(self, project_id: str, sessions: list[Session]) -> None:
		self.events.queue_reordered(project_id, self._queued(sessions))

	# ------------------------------------------------------------------
	# Queries
	# ------------------------------------------------------------------

	async def get_session(self, project_id: str, feature_id: str) -> Optional[Session]:
		return await self._load_session(project_id, feature_id)

	async def list_sessions(self, project_id: str) -> list[Session]:
		return await self._load_project_sessions(project_id)

	async def list_projects(self) -> dict[str, dict]:
		return await self._read(PROJECTS_INDEX) or {}

	async def get_active_session(self, project_id: str) -> Optional[Session]:
		return self._active(await self._load_project_sessions(project_id))

	async def get_queued_sessions(self, project_id: str) -> list[Session]:
		"""Queued sessions ordered by queue position."""
		return self._queued(await self._load_project_sessions(project_id))

	async def get_next_queued_session(self, project_id: str) -> Optional[Session]:
		queued = await self.get_queued_sessions(project_id)
		return queued[0] if queued else None

	# ------------------------------------------------------------------
	# Creation and updates
	# ------------------------------------------------------------------

	async def create_session(self, data: CreateSessionInput) -> Session:
		"""
		Create a session.

		If the project has no active session the new one starts at stage 1
		(discovery); otherwise it joins the queue at data.insert_at_position.

		Raises:
			PreconditionError: Missing title/project path, or bad queue position
			SessionExistsError: A session with the same feature id exists
		"""
		if not data.title.strip():
			raise PreconditionError("Title is required")
		if not data.project_path.strip():
			raise PreconditionError("Project path is required")
		self._check_insert_position(data.insert_at_position)

		project_id = self.get_project_id(data.project_path)
		feature_id = self.get_feature_id(data.title)

		async with self._project_lock(project_id):
			if await asyncio.to_thread(self.storage.exists, self._session_path(project_id, feature_id)):
				raise SessionExistsError(f"Session already exists: {project_id}/{feature_id}. Use a different title.")

			sessions = await self._load_project_sessions(project_id)
			now = utc_now()
			user_fields = sanitize_session_fields({
				"title": data.title,
				"feature_description": data.feature_description,
				"acceptance_criteria": data.acceptance_criteria,
				"affected_files": data.affected_files,
				"technical_notes": data.technical_notes,
			})
			session = Session(
				id=str(uuid.uuid4()),
				project_id=project_id,
				feature_id=feature_id,
				project_path=data.project_path,
				**user_fields,
				base_branch=data.base_branch or self.config.default_base_branch,
				feature_branch=f"feature/{feature_id}",
				preferences=data.preferences,
				data_version=0,
				created_at=now,
				updated_at=now,
			)

			shifted: list[Session] = []
			if self._active(sessions) is not None:
				queued = self._queued(sessions)
				position = self._resolve_insert_position(data.insert_at_position, len(queued))
				session = session.model_copy(update={
					"status": SessionStatus.QUEUED,
					"queue_position": position,
					"queued_at": now,
				})
				ordered = queued[:position - 1] + [session] + queued[position - 1:]
				shifted = [s for s in self._renumber(ordered) if s.id != session.id]

			session = await self._save(session)
			await self._register(session)
			shifted = await self._save_all(shifted)

			logger.info(
				f"Created session {session.key} "
				f"({session.status.value}{f', queue position {session.queue_position}' if session.queue_position else ''})"
			)
			self.events.session_updated(session)
			if shifted:
				self._emit_queue(project_id, self._merge(sessions, [session, *shifted]))
			return session

	@staticmethod
	def _check_insert_position(position: QueueInsertPosition) -> None:
		if isinstance(position, int) and not isinstance(position, bool) and position < 1:
			raise PreconditionError(f"Queue position must be >= 1, got {position}")

	@staticmethod
	def _resolve_insert_position(position: QueueInsertPosition, queue_length: int) -> int:
		if position == "front":
			return 1
		if position == "end":
			return queue_length + 1
		return min(int(position), queue_length + 1)

	@staticmethod
	def _merge(sessions: list[Session], updated: list[Session]) -> list[Session]:
		"""Replace loaded sessions by their updated copies (matched by id)."""
		by_id = {s.id: s for s in sessions}
		for session in updated:
			by_id[session.id] = session
		return list(by_id.values())

	async def update_session(self, project_id: str, feature_id: str, updates: dict[str, Any]) -> Session:
		"""Update descriptive fields. Protected and lifecycle fields are ignored."""
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			allowed = {k: v for k, v in updates.items() if k not in PROTECTED_FIELDS | LIFECYCLE_FIELDS}
			ignored = set(updates) - set(allowed)
			if ignored:
				logger.debug(f"Ignoring protected fields in update of {session.key}: {sorted(ignored)}")
			merged = Session.model_validate({**session.model_dump(), **allowed})
			saved = await self._save(merged)
			self.events.session_updated(saved)
			return saved

	async def edit_queued_session(
		self,
		project_id: str,
		feature_id: str,
		data_version: int,
		updates: dict[str, Any],
	) -> Session:
		"""
		Edit a session waiting in the queue.

		Args:
			data_version: The version the caller read; must match the stored one
			updates: New values for editable fields (others are ignored)

		Raises:
			SessionNotQueuedError: The session is not queued
			VersionConflictError: data_version is stale or invalid
		"""
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			if session.status != SessionStatus.QUEUED:
				raise SessionNotQueuedError(
					f"Session {session.key} is not queued (status: {session.status.value}); only queued sessions can be edited"
				)
			if data_version < 1 or data_version != session.data_version:
				raise VersionConflictError(
					f"Session {session.key} was modified (expected version {data_version}, "
					f"current version {session.data_version}); reload and retry"
				)

			allowed = sanitize_session_fields({k: v for k, v in updates.items() if k in EDITABLE_QUEUED_FIELDS})
			if "title" in allowed and not str(allowed["title"]).strip():
				raise PreconditionError("Title is required")
			merged = Session.model_validate({**session.model_dump(), **allowed})
			saved = await self._save(merged)
			logger.info(f"Edited queued session {saved.key} (version {saved.data_version})")
			self.events.session_updated(saved)
			return saved

	# ------------------------------------------------------------------
	# Stage transitions
	# ------------------------------------------------------------------

	async def _check_preconditions(
		self,
		session: Session,
		preconditions: tuple[Precondition, ...],
		feedback: Optional[str] = None,
	) -> None:
		for precondition in preconditions:
			if precondition == Precondition.PLAN_APPROVED:
				plan = await self._read_plan(session.project_id, session.feature_id)
				if plan is None or not plan.meta.is_approved:
					raise PreconditionError(f"Plan must be approved before {session.key} can enter implementation")
			elif precondition == Precondition.PR_CREATED:
				if not session.pr_url:
					raise PreconditionError(f"Session {session.key} has no pull request to review")
			elif precondition == Precondition.FEEDBACK_REQUIRED:
				if not feedback or not feedback.strip():
					raise PreconditionError("Feedback is required for this action")

	async def transition_stage(self, project_id: str, feature_id: str, target_stage: int) -> Session:
		"""
		Manually move an active session to another stage (1-7).

		Entering stage 3 requires an approved plan; entering stage 5 requires
		a pull request. Moving to stage 7 completes the session and promotes the
		next queued one. Moving backwards counts as a replanning round.

		Raises:
			InvalidTransitionError: Session not active, or bad target
			PreconditionError: A stage entry precondition is unmet
		"""
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			if lookup(session.status, LifecycleAction.TRANSITION) is None:
				raise InvalidTransitionError(
					f"Cannot transition session {session.key} in status '{session.status.value}'"
				)
			transition = manual_transition(session.status, target_stage)
			if transition is None or target_stage == session.current_stage:
				raise InvalidTransitionError(
					f"Invalid stage transition: {session.current_stage} -> {target_stage}"
				)
			await self._check_preconditions(
				session, transition.preconditions + STAGE_ENTRY_PRECONDITIONS.get(target_stage, ()),
			)
			return await self._move(session, transition, target_stage)

	async def resolve_final_approval(
		self,
		project_id: str,
		feature_id: str,
		action: FinalApprovalAction,
		feedback: Optional[str] = None,
	) -> Session:
		"""
		Resolve stage 6.

		merge -> stage 7 (completed); plan_changes -> stage 2 with feedback,
		clearing plan modification tracking; re_review -> stage 5 with feedback.
		"""
		lifecycle_action = LifecycleAction(FinalApprovalAction(action).value)
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			transition = lookup(session.status, lifecycle_action)
			if transition is None:
				raise InvalidTransitionError(
					f"Cannot {lifecycle_action.value} session {session.key} in status '{session.status.value}'"
				)
			await self._check_preconditions(session, transition.preconditions, feedback)
			return await self._move(session, transition, transition.target_stage, feedback)

	async def _move(
		self,
		session: Session,
		transition: Transition,
		target_stage: int,
		feedback: Optional[str] = None,
	) -> Session:
		previous_stage = session.current_stage
		updates: dict[str, Any] = {
			"current_stage": target_stage,
			"status": transition.target_status or status_for_stage(target_stage),
		}
		if target_stage < previous_stage:
			updates["replanning_count"] = session.replanning_count + 1
		if SideEffect.RECORD_FEEDBACK in transition.side_effects:
			updates["review_feedback"] = sanitize_feedback(feedback) or None
		if SideEffect.RESET_PLAN_TRACKING in transition.side_effects:
			updates.update({
				"modified_step_ids": [],
				"added_step_ids": [],
				"removed_step_ids": [],
				"is_plan_modified": True,
			})

		promoted = None
		shifted: list[Session] = []
		if SideEffect.PROMOTE_NEXT in transition.side_effects:
			others = [s for s in await self._load_project_sessions(session.project_id) if s.id != session.id]
			promoted, shifted = self._promote_next(others)

		saved = await self._save(session.model_copy(update=updates))
		logger.info(f"Session {saved.key}: stage {previous_stage} -> {saved.current_stage} ({saved.status.value})")
		self.events.stage_changed(saved, previous_stage)
		await self._finish_promotion(saved.project_id, promoted, shifted)
		return saved

	async def _finish_promotion(
		self,
		project_id: str,
		promoted: Optional[Session],
		shifted: list[Session],
	) -> Optional[Session]:
		if promoted is not None:
			promoted = await self._save(promoted)
			logger.info(f"Promoted queued session {promoted.key} to {promoted.status.value}")
			self.events.session_updated(promoted)
		shifted = await self._save_all(shifted)
		if promoted is not None or shifted:
			self._emit_queue(project_id, await self._load_project_sessions(project_id))
		return promoted

	# ------------------------------------------------------------------
	# Backout, resume, queue control
	# ------------------------------------------------------------------

	async def backout_session(
		self,
		project_id: str,
		feature_id: str,
		action: BackoutAction,
		reason: BackoutReason = BackoutReason.USER_REQUESTED,
	) -> BackoutResult:
		"""
		Take a session out of the pipeline.

		pause keeps the stage for a later resume; abandon fails the session.
		If it held the active slot, the next queued session is promoted.

		Raises:
			InvalidTransitionError: Session is paused, completed or failed
		"""
		lifecycle_action = LifecycleAction(BackoutAction(action).value)
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			transition = lookup(session.status, lifecycle_action)
			if transition is None:
				raise InvalidTransitionError(
					f"Cannot back out session {session.key}: status is '{session.status.value}'"
				)

			sessions = await self._load_project_sessions(project_id)
			others = [s for s in sessions if s.id != session.id]
			was_active = session.is_active

			updated = session.model_copy(update={
				"status": transition.target_status,
				"queue_position": None,
				"queued_at": None,
				"backout_reason": BackoutReason(reason),
				"backout_timestamp": utc_now(),
			})

			promoted = None
			if was_active:
				promoted, shifted = self._promote_next(others)
			else:
				shifted = self._renumber(self._queued(others))

			saved = await self._save(updated)
			logger.info(f"Backed out session {saved.key}: {lifecycle_action.value} ({saved.backout_reason.value})")
			self.events.session_updated(saved)
			promoted = await self._finish_promotion(project_id, promoted, shifted)
			return BackoutResult(session=saved, promoted_session=promoted)

	async def resume_session(self, project_id: str, feature_id: str) -> ResumeResult:
		"""
		Resume a paused session.

		It becomes active at its preserved stage when the project has no
		active session; otherwise it is queued at the front.

		Raises:
			InvalidTransitionError: Session is not paused
		"""
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			transition = lookup(session.status, LifecycleAction.RESUME)
			if transition is None:
				raise InvalidTransitionError(
					f"Cannot resume session {session.key}: status is '{session.status.value}'"
				)

			others = [s for s in await self._load_project_sessions(project_id) if s.id != session.id]
			cleared = session.model_copy(update={"backout_reason": None, "backout_timestamp": None})

			if self._active(others) is None:
				saved = await self._save(self._activate(cleared))
				logger.info(f"Resumed session {saved.key} at stage {saved.current_stage}")
				self.events.session_updated(saved)
				self.events.stage_changed(saved, saved.current_stage)
				return ResumeResult(session=saved, was_queued=False)

			requeued = cleared.model_copy(update={
				"status": SessionStatus.QUEUED,
				"queue_position": 1,
				"queued_at": utc_now(),
			})
			shifted = self._renumber([requeued, *self._queued(others)])
			shifted = [s for s in shifted if s.id != requeued.id]

			saved = await self._save(requeued)
			shifted = await self._save_all(shifted)
			logger.info(f"Resumed session {saved.key} into queue position 1")
			self.events.session_updated(saved)
			self._emit_queue(project_id, self._merge(others, [saved, *shifted]))
			return ResumeResult(session=saved, was_queued=True)

	async def reorder_queue(self, project_id: str, ordered_feature_ids: list[str]) -> list[Session]:
		"""
		Move the given queued feature ids to the front, in the given order.

		Unknown or non-queued ids and duplicates are ignored; the rest of the
		queue keeps its relative order behind them.

		Returns:
			The queued sessions in their new order
		"""
		async with self._project_lock(project_id):
			sessions = await self._load_project_sessions(project_id)
			queued = self._queued(sessions)
			by_feature = {s.feature_id: s for s in queued}

			moved: list[Session] = []
			for feature_id in ordered_feature_ids:
				session = by_feature.get(feature_id)
				if session is not None and session not in moved:
					moved.append(session)
			rest = [s for s in queued if s not in moved]

			changed = await self._save_all(self._renumber(moved + rest))
			merged = self._merge(sessions, changed)
			if changed:
				logger.info(f"Reordered queue for project {project_id}")
			self._emit_queue(project_id, merged)
			return self._queued(merged)

	async def start_queued_session(self, project_id: str, feature_id: str) -> Session:
		"""
		Activate a specific queued session.

		Raises:
			SessionNotQueuedError: The session is not queued
			InvalidTransitionError: Another session is active
		"""
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			if session.status != SessionStatus.QUEUED:
				raise SessionNotQueuedError(f"Session {session.key} is not queued")
			sessions = await self._load_project_sessions(project_id)
			active = self._active(sessions)
			if active is not None:
				raise InvalidTransitionError(
					f"Cannot start {session.key}: another session is active ({active.feature_id})"
				)

			others = [s for s in self._queued(sessions) if s.id != session.id]
			promoted = self._activate(session)
			return await self._finish_promotion(project_id, promoted, self._renumber(others))

	async def recalculate_queue_positions(self, project_id: str) -> list[Session]:
		"""Close gaps and duplicates in a project's queue, keeping its order."""
		async with self._project_lock(project_id):
			sessions = await self._load_project_sessions(project_id)
			changed = await self._save_all(self._renumber(self._queued(sessions)))
			merged = self._merge(sessions, changed)
			if changed:
				self._emit_queue(project_id, merged)
			return self._queued(merged)

	# ------------------------------------------------------------------
	# Plans
	# ------------------------------------------------------------------

	async def _read_plan(self, project_id: str, feature_id: str) -> Optional[ComposablePlan]:
		return await asyncio.to_thread(
			read_plan_with_migration, self.storage, self._session_dir(project_id, feature_id),
		)

	async def get_plan(self, project_id: str, feature_id: str) -> Optional[ComposablePlan]:
		return await self._read_plan(project_id, feature_id)

	async def _store_plan(self, session: Session, plan: ComposablePlan) -> PlanValidationResult:
		result = self.validator.revalidate(plan)
		data = plan.model_dump(mode="json")
		await self._write(self._plan_path(session.project_id, session.feature_id), data)
		self.events.plan_updated(session.project_id, session.feature_id, data)
		return result

	async def save_plan(self, project_id: str, feature_id: str, plan: ComposablePlan) -> PlanValidationResult:
		"""Validate and store a plan, bumping the session's plan version."""
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			if not plan.meta.session_id:
				plan.meta.session_id = session.id
			plan.meta.updated_at = utc_now()
			result = await self._store_plan(session, plan)
			await self._save(session.model_copy(update={"current_plan_version": session.current_plan_version + 1}))
			logger.info(f"Saved plan for {session.key} (valid: {result.overall})")
			return result

	async def check_plan(self, project_id: str, feature_id: str) -> PlanCompleteness:
		"""
		Check whether the plan is ready for implementation.

		Records the rework context on the session and counts the attempt.

		Raises:
			PreconditionError: The review limit has been reached
		"""
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			limit = self.config.max_plan_review_iterations
			if session.plan_validation_attempts >= limit:
				raise PreconditionError(f"Plan review limit reached for {session.key} ({limit} attempts)")

			plan = await self._read_plan(project_id, feature_id)
			completeness = check_plan_completeness(plan, self.validator)
			await self._save(session.model_copy(update={
				"plan_validation_attempts": session.plan_validation_attempts + 1,
				"plan_validation_context": completeness.missing_context or None,
			}))
			return completeness

	async def approve_plan(self, project_id: str, feature_id: str) -> ComposablePlan:
		"""
		Mark the plan approved.

		Raises:
			PreconditionError: No plan exists or it does not validate
		"""
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			plan = await self._read_plan(project_id, feature_id)
			if plan is None:
				raise PreconditionError(f"No plan to approve for {session.key}")
			result = self.validator.validate_plan(plan)
			if not result.overall:
				raise PreconditionError(
					f"Plan for {session.key} is not valid: {'; '.join(i.message for i in result.issues[:5])}"
				)
			plan.meta.is_approved = True
			plan.meta.updated_at = utc_now()
			await self._store_plan(session, plan)
			logger.info(f"Approved plan for {session.key}")
			return plan

	async def _set_step_status(
		self,
		session: Session,
		step_id: str,
		status: StepStatus,
	) -> Optional[PlanStep]:
		plan = await self._read_plan(session.project_id, session.feature_id)
		step = plan.get_step(step_id) if plan else None
		if step is None:
			logger.debug(f"Step {step_id} not in plan for {session.key}")
			return None
		for candidate in plan.steps:
			if candidate.id == step_id:
				candidate.status = status
				if status == StepStatus.COMPLETED:
					stamp_content_hash(candidate)
				step = candidate
		await self._store_plan(session, plan)
		return step

	async def start_step(self, project_id: str, feature_id: str, step_id: str) -> Optional[PlanStep]:
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			step = await self._set_step_status(session, step_id, StepStatus.IN_PROGRESS)
			if step is not None:
				self.events.step_started(project_id, feature_id, step_id)
			return step

	async def complete_step(self, project_id: str, feature_id: str, step_id: str, summary: str = "") -> Optional[PlanStep]:
		"""Mark a step completed and record its content hash."""
		async with self._project_lock(project_id):
			session = await self._require_session(project_id, feature_id)
			step = await self._set_step_status(session, step_id, StepStatus.COMPLETED)
			if step is not None:
				self.events.step_completed(project_id, feature_id, step_id, summary)
			return step

	# ------------------------------------------------------------------
	# Assistant output
	# ------------------------------------------------------------------

	async def process_output(self, project_id: str, feature_id: str, text: str) -> ParsedOutput:
		"""Parse assistant output and apply what it reports to the session and plan."""
		parsed = self.parser.parse(text)
		session = await self.get_session(project_id, feature_id)
		if session is None:
			raise SessionNotFoundError(f"Session not found: {project_id}/{feature_id}")

		if parsed.plan_steps or has_composable_plan_markers(text):
			plan = parse_composable_plan(text, session.id)
			if plan is not None:
				await self.save_plan(project_id, feature_id, plan)

		if parsed.removed_step_ids:
			async with self._project_lock(project_id):
				plan = await self._read_plan(project_id, feature_id)
				if plan is not None:
					removed = plan.remove_steps(parsed.removed_step_ids)
					if removed:
						logger.info(f"Removed steps {removed} from plan for {session.key}")
						await self._store_plan(session, plan)

		updates: dict[str, Any] = {}
		if parsed.step_modifications is not None:
			mods = parsed.step_modifications
			updates.update({
				"modified_step_ids": mods.modified,
				"added_step_ids": mods.added,
				"removed_step_ids": mods.removed,
				"is_plan_modified": True,
			})
		if parsed.pr_created is not None and parsed.pr_created.url:
			updates["pr_url"] = parsed.pr_created.url
		if parsed.plan_file_path:
			updates["plan_file_path"] = parsed.plan_file_path
		if updates:
			await self.update_session(project_id, feature_id, updates)

		for completion in parsed.steps_completed:
			await self.complete_step(project_id, feature_id, completion.id, completion.summary)

		if parsed.implementation_status is not None:
			status = parsed.implementation_status
			self.events.implementation_progress(project_id, feature_id, {
				"step_id": status.step_id,
				"status": status.status,
				"files_modified": status.files_modified,
				"tests_status": status.tests_status,
				"work_type": status.work_type,
				"progress": status.progress,
				"message": status.message,
			})
		return parsed

	async def run_assistant(self, project_id: str, feature_id: str, prompt: str) -> AssistantRun:
		"""
		Invoke the assistant for a session under its admission lock.

		Raises:
			SpawnLockError: An invocation for this session is already in flight
			SessionNotFoundError: No such session
		"""
		session = await self._require_session(project_id, feature_id)
		async with self.locks.hold(project_id, feature_id, session.current_stage):
			self.events.execution_status(project_id, feature_id, "running", f"stage_{session.current_stage}")
			result = await self.assistant.run(prompt, session.project_path)
			self.events.execution_status(
				project_id, feature_id,
				"idle" if result.success else "error",
				f"stage_{session.current_stage}",
				outcome=result.outcome.value,
			)
			parsed = await self.process_output(project_id, feature_id, result.output) if result.output else ParsedOutput()
			return AssistantRun(result=result, parsed=parsed)


_managers: dict[str, SessionManager] = {}


def get_session_manager(config: Optional[Config] = None) -> SessionManager:
	"""Get or create the session manager for a config's sessions directory."""
	if config is None:
		config = get_config()
	key = str(config.sessions_dir)
	if key not in _managers:
		_managers[key] = SessionManager(FileStorage(config.sessions_dir), config=config)
	return _managers[key]
