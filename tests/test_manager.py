"""Tests for the session manager: lifecycle, queue, plans and assistant runs."""

import asyncio

import pytest

from feature_orchestrator.assistant import AssistantOutcome
from feature_orchestrator.markers.parser import OutputParser, ParsedOutput
from feature_orchestrator.plans.completion import NO_PLAN_CONTEXT
from feature_orchestrator.plans.models import StepStatus
from feature_orchestrator.sessions import get_session_manager
from feature_orchestrator.sessions.errors import (
	InvalidTransitionError,
	PreconditionError,
	SessionExistsError,
	SessionNotFoundError,
	SessionNotQueuedError,
	SpawnLockError,
	VersionConflictError,
)
from feature_orchestrator.sessions.manager import SessionManager
from feature_orchestrator.sessions.models import (
	AcceptanceCriterion,
	BackoutAction,
	BackoutReason,
	FinalApprovalAction,
	SessionStatus,
)

from .helpers import EventRecorder, FakeAssistant, make_config, make_manager, make_plan, session_input

PROJECT_PATH = "/work/app"
PID = SessionManager.get_project_id(PROJECT_PATH)


async def create_all(manager: SessionManager, *titles: str) -> list:
	return [await manager.create_session(session_input(title)) for title in titles]


async def assert_queue_invariants(manager: SessionManager, project_id: str = PID) -> None:
	"""At most one active session; queue positions are exactly 1..N."""
	sessions = await manager.list_sessions(project_id)
	assert len([s for s in sessions if s.is_active]) <= 1
	queued = [s for s in sessions if s.status == SessionStatus.QUEUED]
	assert sorted(s.queue_position for s in queued) == list(range(1, len(queued) + 1))
	assert all(s.queue_position is None for s in sessions if s.status != SessionStatus.QUEUED)


async def positions(manager: SessionManager) -> dict[str, int]:
	return {s.feature_id: s.queue_position for s in await manager.get_queued_sessions(PID)}


class TestIdentity:
	def test_project_id_is_stable_hash(self):
		assert PID == SessionManager.get_project_id(PROJECT_PATH)
		assert len(PID) == 32
		assert PID != SessionManager.get_project_id("/work/other")

	def test_feature_id_slug(self):
		assert SessionManager.get_feature_id("Add User  Login!!") == "add-user-login"
		assert SessionManager.get_feature_id("  --Fix: the -- bug--  ") == "fix-the-bug"
		assert len(SessionManager.get_feature_id("word " * 40)) <= 64

	def test_feature_id_requires_alphanumerics(self):
		with pytest.raises(PreconditionError):
			SessionManager.get_feature_id("!!!")


class TestCreateSession:
	"""Tests for session creation and queue insertion."""

	@pytest.mark.asyncio
	async def test_first_session_is_active(self, tmp_path):
		manager = make_manager(tmp_path)
		recorder = EventRecorder(manager.events)
		session = await manager.create_session(session_input("Add Login"))

		assert session.status == SessionStatus.DISCOVERY
		assert session.current_stage == 1
		assert session.feature_id == "add-login"
		assert session.feature_branch == "feature/add-login"
		assert session.base_branch == "main"
		assert session.queue_position is None
		assert session.data_version == 1
		assert recorder.names() == ["session.updated"]

		projects = await manager.list_projects()
		assert projects[PID]["project_path"] == PROJECT_PATH

	@pytest.mark.asyncio
	async def test_later_sessions_queue_at_end(self, tmp_path):
		manager = make_manager(tmp_path)
		a, b, c = await create_all(manager, "A one", "B two", "C three")
		assert a.status == SessionStatus.DISCOVERY
		assert (b.status, b.queue_position, b.current_stage) == (SessionStatus.QUEUED, 1, 1)
		assert (c.status, c.queue_position) == (SessionStatus.QUEUED, 2)
		assert b.queued_at is not None
		await assert_queue_invariants(manager)

	@pytest.mark.asyncio
	async def test_insert_at_front_shifts_queue(self, tmp_path):
		manager = make_manager(tmp_path)
		await create_all(manager, "A one", "B two")
		recorder = EventRecorder(manager.events)

		await manager.create_session(session_input("C three", insert_at_position="front"))

		assert await positions(manager) == {"c-three": 1, "b-two": 2}
		assert recorder.names() == ["session.updated", "queue.reordered"]
		await assert_queue_invariants(manager)

	@pytest.mark.asyncio
	async def test_numeric_position_is_clamped(self, tmp_path):
		manager = make_manager(tmp_path)
		await create_all(manager, "A one", "B two")
		c = await manager.create_session(session_input("C three", insert_at_position=10))
		assert c.queue_position == 2

	@pytest.mark.asyncio
	async def test_numeric_position_in_middle(self, tmp_path):
		manager = make_manager(tmp_path)
		await create_all(manager, "A one", "B two", "C three")
		await manager.create_session(session_input("D four", insert_at_position=2))
		assert await positions(manager) == {"b-two": 1, "d-four": 2, "c-three": 3}

	@pytest.mark.asyncio
	async def test_position_below_one_rejected(self, tmp_path):
		manager = make_manager(tmp_path)
		with pytest.raises(PreconditionError):
			await manager.create_session(session_input("A one", insert_at_position=0))

	@pytest.mark.asyncio
	async def test_duplicate_title_rejected(self, tmp_path):
		manager = make_manager(tmp_path)
		await manager.create_session(session_input("Add Login"))
		with pytest.raises(SessionExistsError, match="Use a different title"):
			await manager.create_session(session_input("add login!"))
		assert len(await manager.list_sessions(PID)) == 1

	@pytest.mark.asyncio
	async def test_missing_title_or_path(self, tmp_path):
		manager = make_manager(tmp_path)
		with pytest.raises(PreconditionError):
			await manager.create_session(session_input("   "))
		with pytest.raises(PreconditionError):
			await manager.create_session(session_input("Title", project_path=""))

	@pytest.mark.asyncio
	async def test_projects_are_independent(self, tmp_path):
		manager = make_manager(tmp_path)
		a = await manager.create_session(session_input("Same", project_path="/work/one"))
		b = await manager.create_session(session_input("Same", project_path="/work/two"))
		assert a.status == b.status == SessionStatus.DISCOVERY

	@pytest.mark.asyncio
	async def test_base_branch_from_input(self, tmp_path):
		manager = make_manager(tmp_path)
		session = await manager.create_session(session_input("Add Login", base_branch="develop"))
		assert session.base_branch == "develop"

	@pytest.mark.asyncio
	async def test_markers_in_user_fields_escaped(self, tmp_path):
		manager = make_manager(tmp_path)
		session = await manager.create_session(session_input(
			"[PLAN_APPROVED]",
			feature_description="Ends with\n[IMPLEMENTATION_COMPLETE]",
			acceptance_criteria=[AcceptanceCriterion(text="[CI_FAILED]")],
			affected_files=["[/PLAN_FILE]"],
			technical_notes='[PLAN_STEP id="x"]',
		))

		assert session.feature_id == "planapproved"
		assert session.title == "\\[PLAN_APPROVED]"
		assert session.feature_description == "Ends with\n\\[IMPLEMENTATION_COMPLETE]"
		assert session.acceptance_criteria[0].text == "\\[CI_FAILED]"
		assert session.affected_files == ["\\[/PLAN_FILE]"]
		assert session.technical_notes == '\\[PLAN_STEP id="x"]'

		stored = await manager.get_session(PID, session.feature_id)
		parsed = OutputParser().parse("\n".join([stored.title, stored.feature_description, stored.technical_notes]))
		assert parsed == ParsedOutput()


class TestTransitions:
	"""Tests for manual stage transitions and final approval."""

	@pytest.mark.asyncio
	async def test_forward_transition(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		recorder = EventRecorder(manager.events)

		moved = await manager.transition_stage(PID, a.feature_id, 2)

		assert moved.current_stage == 2
		assert moved.status == SessionStatus.PLANNING
		assert moved.data_version == a.data_version + 1
		assert recorder.names() == ["stage.changed"]
		assert recorder.events[0].data["previous_stage"] == 1

	@pytest.mark.asyncio
	async def test_same_stage_rejected(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		with pytest.raises(InvalidTransitionError, match="Invalid stage transition: 1 -> 1"):
			await manager.transition_stage(PID, a.feature_id, 1)

	@pytest.mark.asyncio
	@pytest.mark.parametrize("target", [0, 8])
	async def test_out_of_range_rejected(self, tmp_path, target):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		with pytest.raises(InvalidTransitionError):
			await manager.transition_stage(PID, a.feature_id, target)

	@pytest.mark.asyncio
	async def test_queued_session_cannot_transition(self, tmp_path):
		manager = make_manager(tmp_path)
		_, b = await create_all(manager, "A one", "B two")
		with pytest.raises(InvalidTransitionError):
			await manager.transition_stage(PID, b.feature_id, 2)

	@pytest.mark.asyncio
	async def test_missing_session(self, tmp_path):
		manager = make_manager(tmp_path)
		with pytest.raises(SessionNotFoundError):
			await manager.transition_stage(PID, "nope", 2)

	@pytest.mark.asyncio
	async def test_implementation_requires_approved_plan(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.transition_stage(PID, a.feature_id, 2)

		with pytest.raises(PreconditionError):
			await manager.transition_stage(PID, a.feature_id, 3)

		await manager.save_plan(PID, a.feature_id, make_plan())
		with pytest.raises(PreconditionError):
			await manager.transition_stage(PID, a.feature_id, 3)

		await manager.approve_plan(PID, a.feature_id)
		moved = await manager.transition_stage(PID, a.feature_id, 3)
		assert moved.status == SessionStatus.IMPLEMENTING

	@pytest.mark.asyncio
	async def test_pr_review_requires_pull_request(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		with pytest.raises(PreconditionError):
			await manager.transition_stage(PID, a.feature_id, 5)
		await manager.update_session(PID, a.feature_id, {"pr_url": "https://example.com/pr/1"})
		moved = await manager.transition_stage(PID, a.feature_id, 5)
		assert moved.status == SessionStatus.PR_REVIEW

	@pytest.mark.asyncio
	async def test_backward_move_counts_replanning(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.transition_stage(PID, a.feature_id, 4)
		moved = await manager.transition_stage(PID, a.feature_id, 2)
		assert moved.replanning_count == 1

	@pytest.mark.asyncio
	async def test_manual_move_out_of_final_approval(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.transition_stage(PID, a.feature_id, 6)
		moved = await manager.transition_stage(PID, a.feature_id, 4)
		assert moved.status == SessionStatus.PR_CREATION
		assert moved.replanning_count == 1

	@pytest.mark.asyncio
	async def test_manual_move_to_completed_promotes(self, tmp_path):
		manager = make_manager(tmp_path)
		a, b, c = await create_all(manager, "A one", "B two", "C three")
		await manager.transition_stage(PID, a.feature_id, 2)

		done = await manager.transition_stage(PID, a.feature_id, 7)

		assert done.status == SessionStatus.COMPLETED
		assert done.current_stage == 7
		assert (await manager.get_session(PID, b.feature_id)).status == SessionStatus.DISCOVERY
		assert await positions(manager) == {c.feature_id: 1}
		await assert_queue_invariants(manager)
		with pytest.raises(InvalidTransitionError):
			await manager.transition_stage(PID, a.feature_id, 2)

	@pytest.mark.asyncio
	async def test_merge_completes_and_promotes(self, tmp_path):
		manager = make_manager(tmp_path)
		a, b, c = await create_all(manager, "A one", "B two", "C three")
		await manager.transition_stage(PID, a.feature_id, 6)
		recorder = EventRecorder(manager.events)

		merged = await manager.resolve_final_approval(PID, a.feature_id, FinalApprovalAction.MERGE)

		assert merged.status == SessionStatus.COMPLETED
		assert merged.current_stage == 7
		promoted = await manager.get_session(PID, b.feature_id)
		assert promoted.status == SessionStatus.DISCOVERY
		assert promoted.queue_position is None
		assert await positions(manager) == {c.feature_id: 1}
		assert recorder.names() == ["stage.changed", "session.updated", "queue.reordered"]
		await assert_queue_invariants(manager)

	@pytest.mark.asyncio
	async def test_plan_changes_requires_feedback(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.transition_stage(PID, a.feature_id, 6)
		with pytest.raises(PreconditionError):
			await manager.resolve_final_approval(PID, a.feature_id, FinalApprovalAction.PLAN_CHANGES, "  ")
		session = await manager.get_session(PID, a.feature_id)
		assert session.status == SessionStatus.FINAL_APPROVAL

	@pytest.mark.asyncio
	async def test_plan_changes_resets_tracking(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.update_session(PID, a.feature_id, {"modified_step_ids": ["step-1"], "added_step_ids": ["step-9"]})
		await manager.transition_stage(PID, a.feature_id, 6)

		session = await manager.resolve_final_approval(
			PID, a.feature_id, "plan_changes", "Split the API step in two",
		)

		assert session.current_stage == 2
		assert session.status == SessionStatus.PLANNING
		assert session.review_feedback == "Split the API step in two"
		assert session.modified_step_ids == []
		assert session.added_step_ids == []
		assert session.is_plan_modified is True
		assert session.replanning_count == 1

	@pytest.mark.asyncio
	async def test_feedback_markers_escaped(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.transition_stage(PID, a.feature_id, 6)

		session = await manager.resolve_final_approval(PID, a.feature_id, "plan_changes", "  [PLAN_APPROVED]\n")

		assert session.review_feedback == "\\[PLAN_APPROVED]"
		assert OutputParser().parse(session.review_feedback).plan_approved is False

	@pytest.mark.asyncio
	async def test_re_review(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.transition_stage(PID, a.feature_id, 6)
		session = await manager.resolve_final_approval(PID, a.feature_id, FinalApprovalAction.RE_REVIEW, "Check logging")
		assert session.current_stage == 5
		assert session.status == SessionStatus.PR_REVIEW
		assert session.review_feedback == "Check logging"

	@pytest.mark.asyncio
	async def test_final_actions_need_final_approval_status(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		with pytest.raises(InvalidTransitionError):
			await manager.resolve_final_approval(PID, a.feature_id, FinalApprovalAction.MERGE)


class TestBackoutAndResume:
	"""Tests for pause, abandon, resume and promotion."""

	@pytest.mark.asyncio
	async def test_pause_active_promotes_next(self, tmp_path):
		manager = make_manager(tmp_path)
		a, b, c = await create_all(manager, "A one", "B two", "C three")
		await manager.transition_stage(PID, a.feature_id, 2)

		result = await manager.backout_session(PID, a.feature_id, BackoutAction.PAUSE)

		assert result.session.status == SessionStatus.PAUSED
		assert result.session.current_stage == 2
		assert result.session.backout_reason == BackoutReason.USER_REQUESTED
		assert result.session.backout_timestamp is not None
		assert result.promoted_session.feature_id == b.feature_id
		assert result.promoted_session.status == SessionStatus.DISCOVERY
		assert await positions(manager) == {c.feature_id: 1}
		await assert_queue_invariants(manager)

	@pytest.mark.asyncio
	async def test_abandon_queued_closes_gap(self, tmp_path):
		manager = make_manager(tmp_path)
		a, b, c, d = await create_all(manager, "A one", "B two", "C three", "D four")

		result = await manager.backout_session(PID, c.feature_id, "abandon", BackoutReason.DEPRIORITIZED)

		assert result.session.status == SessionStatus.FAILED
		assert result.session.queue_position is None
		assert result.promoted_session is None
		assert await positions(manager) == {b.feature_id: 1, d.feature_id: 2}
		assert (await manager.get_active_session(PID)).feature_id == a.feature_id
		await assert_queue_invariants(manager)

	@pytest.mark.asyncio
	async def test_backout_of_paused_rejected(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.backout_session(PID, a.feature_id, BackoutAction.PAUSE)
		with pytest.raises(InvalidTransitionError):
			await manager.backout_session(PID, a.feature_id, BackoutAction.ABANDON)

	@pytest.mark.asyncio
	async def test_resume_without_active_session(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.transition_stage(PID, a.feature_id, 2)
		await manager.backout_session(PID, a.feature_id, BackoutAction.PAUSE)
		recorder = EventRecorder(manager.events)

		result = await manager.resume_session(PID, a.feature_id)

		assert not result.was_queued
		assert result.session.status == SessionStatus.PLANNING
		assert result.session.current_stage == 2
		assert result.session.backout_reason is None
		assert result.session.backout_timestamp is None
		assert recorder.names() == ["session.updated", "stage.changed"]

	@pytest.mark.asyncio
	async def test_resume_behind_active_queues_at_front(self, tmp_path):
		"""Pause A (B promoted), resume A: A waits at position 1 ahead of C."""
		manager = make_manager(tmp_path)
		a, b, c = await create_all(manager, "A one", "B two", "C three")
		await manager.transition_stage(PID, a.feature_id, 2)
		await manager.backout_session(PID, a.feature_id, BackoutAction.PAUSE)

		result = await manager.resume_session(PID, a.feature_id)

		assert result.was_queued
		assert result.session.status == SessionStatus.QUEUED
		assert result.session.current_stage == 2
		assert await positions(manager) == {a.feature_id: 1, c.feature_id: 2}
		await assert_queue_invariants(manager)

		# When B leaves, A is promoted straight back into planning
		promoted = (await manager.backout_session(PID, b.feature_id, BackoutAction.ABANDON)).promoted_session
		assert promoted.feature_id == a.feature_id
		assert promoted.status == SessionStatus.PLANNING
		assert await positions(manager) == {c.feature_id: 1}

	@pytest.mark.asyncio
	async def test_resume_requires_paused(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		with pytest.raises(InvalidTransitionError):
			await manager.resume_session(PID, a.feature_id)


class TestQueueControl:
	"""Tests for reordering, editing and starting queued sessions."""

	@pytest.mark.asyncio
	async def test_reorder(self, tmp_path):
		manager = make_manager(tmp_path)
		_, b, c, d = await create_all(manager, "A one", "B two", "C three", "D four")
		recorder = EventRecorder(manager.events)

		ordered = await manager.reorder_queue(PID, [d.feature_id, b.feature_id, d.feature_id, "unknown"])

		assert [s.feature_id for s in ordered] == [d.feature_id, b.feature_id, c.feature_id]
		assert [s.queue_position for s in ordered] == [1, 2, 3]
		assert await positions(manager) == {d.feature_id: 1, b.feature_id: 2, c.feature_id: 3}
		assert recorder.names() == ["queue.reordered"]
		await assert_queue_invariants(manager)

	@pytest.mark.asyncio
	async def test_reorder_ignores_active_session(self, tmp_path):
		manager = make_manager(tmp_path)
		a, b = await create_all(manager, "A one", "B two")
		ordered = await manager.reorder_queue(PID, [a.feature_id])
		assert [s.feature_id for s in ordered] == [b.feature_id]
		assert (await manager.get_session(PID, a.feature_id)).status == SessionStatus.DISCOVERY

	@pytest.mark.asyncio
	async def test_edit_queued_session(self, tmp_path):
		manager = make_manager(tmp_path)
		_, b = await create_all(manager, "A one", "B two")

		edited = await manager.edit_queued_session(PID, b.feature_id, b.data_version, {
			"title": "B renamed",
			"technical_notes": "use the cache",
			"status": "discovery",
			"feature_id": "hijack",
		})

		assert edited.title == "B renamed"
		assert edited.technical_notes == "use the cache"
		assert edited.status == SessionStatus.QUEUED
		assert edited.feature_id == b.feature_id
		assert edited.data_version == b.data_version + 1

	@pytest.mark.asyncio
	async def test_edit_escapes_markers(self, tmp_path):
		manager = make_manager(tmp_path)
		_, b = await create_all(manager, "A one", "B two")

		edited = await manager.edit_queued_session(PID, b.feature_id, b.data_version, {
			"title": "Ship [PLAN_APPROVED] now",
			"acceptance_criteria": [{"text": "[PR_APPROVED]", "type": "automated"}],
		})

		assert edited.title == "Ship \\[PLAN_APPROVED] now"
		assert edited.acceptance_criteria[0].text == "\\[PR_APPROVED]"
		assert edited.acceptance_criteria[0].type == "automated"
		assert edited.feature_id == b.feature_id

	@pytest.mark.asyncio
	async def test_edit_with_stale_version(self, tmp_path):
		manager = make_manager(tmp_path)
		_, b = await create_all(manager, "A one", "B two")
		await manager.edit_queued_session(PID, b.feature_id, b.data_version, {"technical_notes": "first"})

		with pytest.raises(VersionConflictError):
			await manager.edit_queued_session(PID, b.feature_id, b.data_version, {"technical_notes": "second"})
		with pytest.raises(VersionConflictError):
			await manager.edit_queued_session(PID, b.feature_id, 0, {"technical_notes": "second"})
		assert (await manager.get_session(PID, b.feature_id)).technical_notes == "first"

	@pytest.mark.asyncio
	async def test_edit_requires_queued(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		with pytest.raises(SessionNotQueuedError):
			await manager.edit_queued_session(PID, a.feature_id, a.data_version, {"title": "x"})

	@pytest.mark.asyncio
	async def test_edit_rejects_empty_title(self, tmp_path):
		manager = make_manager(tmp_path)
		_, b = await create_all(manager, "A one", "B two")
		with pytest.raises(PreconditionError):
			await manager.edit_queued_session(PID, b.feature_id, b.data_version, {"title": "  "})

	@pytest.mark.asyncio
	async def test_update_session_ignores_lifecycle_fields(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		updated = await manager.update_session(PID, a.feature_id, {
			"status": "completed",
			"current_stage": 7,
			"id": "other",
			"technical_notes": "noted",
		})
		assert updated.status == SessionStatus.DISCOVERY
		assert updated.current_stage == 1
		assert updated.id == a.id
		assert updated.technical_notes == "noted"

	@pytest.mark.asyncio
	async def test_start_queued_session(self, tmp_path):
		manager = make_manager(tmp_path)
		a, b, c = await create_all(manager, "A one", "B two", "C three")

		with pytest.raises(InvalidTransitionError):
			await manager.start_queued_session(PID, c.feature_id)
		with pytest.raises(SessionNotQueuedError):
			await manager.start_queued_session(PID, a.feature_id)

		# Free the active slot without triggering promotion
		path = f"{PID}/{a.feature_id}/session.json"
		data = manager.storage.read_json(path)
		data["status"] = "completed"
		manager.storage.write_json(path, data)

		started = await manager.start_queued_session(PID, c.feature_id)
		assert started.status == SessionStatus.DISCOVERY
		assert await positions(manager) == {b.feature_id: 1}
		await assert_queue_invariants(manager)

	@pytest.mark.asyncio
	async def test_recalculate_queue_positions(self, tmp_path):
		manager = make_manager(tmp_path)
		_, b, c = await create_all(manager, "A one", "B two", "C three")
		for feature_id, position in ((b.feature_id, 5), (c.feature_id, 9)):
			path = f"{PID}/{feature_id}/session.json"
			data = manager.storage.read_json(path)
			data["queue_position"] = position
			manager.storage.write_json(path, data)

		queued = await manager.recalculate_queue_positions(PID)
		assert [(s.feature_id, s.queue_position) for s in queued] == [(b.feature_id, 1), (c.feature_id, 2)]
		await assert_queue_invariants(manager)


class TestPlans:
	"""Tests for plan storage, checking and approval."""

	@pytest.mark.asyncio
	async def test_save_plan(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		recorder = EventRecorder(manager.events)

		result = await manager.save_plan(PID, a.feature_id, make_plan(session_id=""))

		assert result.overall
		plan = await manager.get_plan(PID, a.feature_id)
		assert plan.meta.session_id == a.id
		assert plan.validation_status.overall
		assert (await manager.get_session(PID, a.feature_id)).current_plan_version == 1
		assert recorder.names() == ["plan.updated"]

	@pytest.mark.asyncio
	async def test_check_plan_without_plan(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		completeness = await manager.check_plan(PID, a.feature_id)
		assert not completeness.complete
		session = await manager.get_session(PID, a.feature_id)
		assert session.plan_validation_context == NO_PLAN_CONTEXT
		assert session.plan_validation_attempts == 1

	@pytest.mark.asyncio
	async def test_check_plan_clears_context_when_complete(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.check_plan(PID, a.feature_id)
		await manager.save_plan(PID, a.feature_id, make_plan())
		assert (await manager.check_plan(PID, a.feature_id)).complete
		assert (await manager.get_session(PID, a.feature_id)).plan_validation_context is None

	@pytest.mark.asyncio
	async def test_check_plan_review_limit(self, tmp_path):
		manager = make_manager(tmp_path)
		manager.config.max_plan_review_iterations = 2
		a, = await create_all(manager, "A one")
		await manager.check_plan(PID, a.feature_id)
		await manager.check_plan(PID, a.feature_id)
		with pytest.raises(PreconditionError, match="limit"):
			await manager.check_plan(PID, a.feature_id)

	@pytest.mark.asyncio
	async def test_approve_plan(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		with pytest.raises(PreconditionError):
			await manager.approve_plan(PID, a.feature_id)

		invalid = make_plan()
		invalid.steps[0].description = "short"
		await manager.save_plan(PID, a.feature_id, invalid)
		with pytest.raises(PreconditionError, match="not valid"):
			await manager.approve_plan(PID, a.feature_id)

		await manager.save_plan(PID, a.feature_id, make_plan())
		approved = await manager.approve_plan(PID, a.feature_id)
		assert approved.meta.is_approved
		assert (await manager.get_plan(PID, a.feature_id)).meta.is_approved

	@pytest.mark.asyncio
	async def test_step_progress(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.save_plan(PID, a.feature_id, make_plan())
		recorder = EventRecorder(manager.events)

		started = await manager.start_step(PID, a.feature_id, "step-1")
		assert started.status == StepStatus.IN_PROGRESS
		completed = await manager.complete_step(PID, a.feature_id, "step-1", "done")
		assert completed.status == StepStatus.COMPLETED

		step = (await manager.get_plan(PID, a.feature_id)).get_step("step-1")
		assert step.status == StepStatus.COMPLETED
		assert step.metadata["content_hash"]
		assert "step.started" in recorder.names()
		assert "step.completed" in recorder.names()

		assert await manager.complete_step(PID, a.feature_id, "step-99") is None


PLAN_OUTPUT = """[PLAN_STEP id="step-1" complexity="low"]
Create schema
Define the account and session tables with migrations and model classes.
[/PLAN_STEP]
[PLAN_STEP id="step-2" parent="step-1" complexity="medium"]
Add endpoints
Expose signup and login endpoints backed by the new tables and models.
[/PLAN_STEP]
"""


class TestProcessOutput:
	"""Tests for applying parsed assistant output."""

	@pytest.mark.asyncio
	async def test_plan_markers_stored(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.process_output(PID, a.feature_id, PLAN_OUTPUT)

		plan = await manager.get_plan(PID, a.feature_id)
		assert [s.id for s in plan.steps] == ["step-1", "step-2"]
		assert plan.meta.session_id == a.id
		assert (await manager.get_session(PID, a.feature_id)).current_plan_version == 1

	@pytest.mark.asyncio
	async def test_remove_steps(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.save_plan(PID, a.feature_id, make_plan())

		await manager.process_output(PID, a.feature_id, '[REMOVE_STEPS]\n["step-3"]\n[/REMOVE_STEPS]')

		plan = await manager.get_plan(PID, a.feature_id)
		assert [s.id for s in plan.steps] == ["step-1", "step-2"]

	@pytest.mark.asyncio
	async def test_session_fields_updated(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		text = (
			"[STEP_MODIFICATIONS]\nmodified: step-1\nadded: step-4\nremoved: step-2\n[/STEP_MODIFICATIONS]\n"
			"[PR_CREATED]\nTitle: A\nURL: https://example.com/pr/3\n[/PR_CREATED]\n"
			'[PLAN_FILE path="/tmp/a-plan.md"]\n'
		)
		await manager.process_output(PID, a.feature_id, text)

		session = await manager.get_session(PID, a.feature_id)
		assert session.modified_step_ids == ["step-1"]
		assert session.added_step_ids == ["step-4"]
		assert session.removed_step_ids == ["step-2"]
		assert session.is_plan_modified
		assert session.pr_url == "https://example.com/pr/3"
		assert session.plan_file_path == "/tmp/a-plan.md"

	@pytest.mark.asyncio
	async def test_step_completion_and_progress(self, tmp_path):
		manager = make_manager(tmp_path)
		a, = await create_all(manager, "A one")
		await manager.save_plan(PID, a.feature_id, make_plan())
		recorder = EventRecorder(manager.events)
		text = (
			'[STEP_COMPLETE id="step-2"]\nWired the router\n[/STEP_COMPLETE]\n'
			"[IMPLEMENTATION_STATUS]\nstep_id: step-3\nprogress: 10\n[/IMPLEMENTATION_STATUS]"
		)

		await manager.process_output(PID, a.feature_id, text)

		plan = await manager.get_plan(PID, a.feature_id)
		assert plan.get_step("step-2").status == StepStatus.COMPLETED
		progress = [e for e in recorder.events if e.name.value == "implementation.progress"]
		assert progress[0].data["step_id"] == "step-3"
		assert progress[0].data["progress"] == 10

	@pytest.mark.asyncio
	async def test_missing_session(self, tmp_path):
		manager = make_manager(tmp_path)
		with pytest.raises(SessionNotFoundError):
			await manager.process_output(PID, "nope", "[PLAN_APPROVED]\n")


class TestRunAssistant:
	"""Tests for locked assistant invocations."""

	@pytest.mark.asyncio
	async def test_run_applies_output(self, tmp_path):
		assistant = FakeAssistant(output="[PR_CREATED]\nTitle: A\nURL: https://example.com/pr/9\n[/PR_CREATED]")
		manager = make_manager(tmp_path, assistant)
		a, = await create_all(manager, "A one")
		recorder = EventRecorder(manager.events)

		run = await manager.run_assistant(PID, a.feature_id, "Implement it")

		assert run.result.success
		assert run.parsed.pr_created.url == "https://example.com/pr/9"
		assert (await manager.get_session(PID, a.feature_id)).pr_url == "https://example.com/pr/9"
		assert assistant.prompts == ["Implement it"]
		statuses = [e.data["status"] for e in recorder.events if e.name.value == "execution.status"]
		assert statuses == ["running", "idle"]
		assert not manager.locks.is_locked(PID, a.feature_id)

	@pytest.mark.asyncio
	async def test_failed_run_reports_error(self, tmp_path):
		manager = make_manager(tmp_path, FakeAssistant(outcome=AssistantOutcome.EXIT_ERROR))
		a, = await create_all(manager, "A one")
		recorder = EventRecorder(manager.events)

		run = await manager.run_assistant(PID, a.feature_id, "go")

		assert not run.result.success
		last = [e for e in recorder.events if e.name.value == "execution.status"][-1]
		assert last.data["status"] == "error"
		assert last.data["outcome"] == "exit_error"

	@pytest.mark.asyncio
	async def test_concurrent_run_rejected(self, tmp_path):
		assistant = FakeAssistant()
		assistant.block = True
		manager = make_manager(tmp_path, assistant)
		a, = await create_all(manager, "A one")

		first = asyncio.create_task(manager.run_assistant(PID, a.feature_id, "one"))
		await assistant.started.wait()
		with pytest.raises(SpawnLockError):
			await manager.run_assistant(PID, a.feature_id, "two")
		assert manager.locks.get_lock_status(PID, a.feature_id).stage == 1

		assistant.release.set()
		await first
		assert assistant.prompts == ["one"]
		assert not manager.locks.is_locked(PID, a.feature_id)

	@pytest.mark.asyncio
	async def test_missing_session(self, tmp_path):
		manager = make_manager(tmp_path)
		with pytest.raises(SessionNotFoundError):
			await manager.run_assistant(PID, "nope", "go")

	@pytest.mark.asyncio
	async def test_close_releases_locks(self, tmp_path):
		manager = make_manager(tmp_path)
		manager.locks.acquire(PID, "x", 1)
		manager.close()
		assert manager.locks.active_lock_count() == 0

	@pytest.mark.asyncio
	async def test_close_drops_project_locks(self, tmp_path):
		manager = make_manager(tmp_path)
		await create_all(manager, "A one")
		await manager.create_session(session_input("B two", project_path="/work/other"))
		assert len(manager._project_locks) == 2

		manager.close()
		assert manager._project_locks == {}
		assert (await manager.create_session(session_input("C three"))).status == SessionStatus.QUEUED


def test_get_session_manager_per_sessions_dir(tmp_path):
	config = make_config(tmp_path / "one")
	assert get_session_manager(config) is get_session_manager(config)
	assert get_session_manager(config) is not get_session_manager(make_config(tmp_path / "two"))
