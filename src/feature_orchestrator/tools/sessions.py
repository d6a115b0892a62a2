"""Feature session lifecycle tools."""

import json
from typing import Optional

from mcp.server.fastmcp import FastMCP

from ..config import Config
from ..sessions.errors import LifecycleError
from ..sessions.manager import SessionManager, get_session_manager
from ..sessions.models import (
	AcceptanceCriterion,
	BackoutAction,
	BackoutReason,
	CreateSessionInput,
	FinalApprovalAction,
	Session,
)


def _session_summary(session: Session) -> dict:
	return {
		"project_id": session.project_id,
		"feature_id": session.feature_id,
		"title": session.title,
		"status": session.status.value,
		"current_stage": session.current_stage,
		"queue_position": session.queue_position,
		"data_version": session.data_version,
	}


def _error(e: LifecycleError) -> str:
	return json.dumps({"success": False, "error": str(e), "code": e.code})


def _parse_position(value: str):
	"""'front', 'end' or a 1-based integer."""
	value = value.strip().lower()
	if value in ("front", "end"):
		return value
	return int(value)


def register_session_tools(mcp: FastMCP, config: Config, manager: Optional[SessionManager] = None) -> None:
	"""Register session lifecycle tools."""
	manager = manager or get_session_manager(config)

	@mcp.tool()
	async def create_feature_session(
		title: str,
		project_path: str,
		feature_description: str = "",
		acceptance_criteria: str = "",
		affected_files: str = "",
		technical_notes: str = "",
		base_branch: str = "",
		insert_at_position: str = "end",
	) -> str:
		"""
		Create a feature session. It starts immediately when the project has
		no active session, otherwise it is queued.

		Args:
			title: Feature title (the feature id is derived from it)
			project_path: Path to the project repository
			feature_description: What the feature should do
			acceptance_criteria: Newline-separated acceptance criteria
			affected_files: Comma-separated file paths
			technical_notes: Free-form notes for the assistant
			base_branch: Branch to build on (defaults to the configured branch)
			insert_at_position: Queue position if queued: "front", "end" or a number
		"""
		try:
			position = _parse_position(insert_at_position)
		except ValueError:
			return json.dumps({"success": False, "error": f"Invalid queue position: {insert_at_position}"})

		data = CreateSessionInput(
			title=title,
			project_path=project_path,
			feature_description=feature_description,
			acceptance_criteria=[
				AcceptanceCriterion(text=line.strip())
				for line in acceptance_criteria.splitlines() if line.strip()
			],
			affected_files=[f.strip() for f in affected_files.split(",") if f.strip()],
			technical_notes=technical_notes,
			base_branch=base_branch or None,
			insert_at_position=position,
		)
		try:
			session = await manager.create_session(data)
		except LifecycleError as e:
			return _error(e)
		return json.dumps({"success": True, "session": _session_summary(session)}, indent=2)

	@mcp.tool()
	async def get_feature_session(project_id: str, feature_id: str) -> str:
		"""
		Get the full state of a feature session.

		Args:
			project_id: Project id (hash of the project path)
			feature_id: Feature id (slug of the title)
		"""
		session = await manager.get_session(project_id, feature_id)
		if session is None:
			return json.dumps({"success": False, "error": f"Session not found: {project_id}/{feature_id}"})
		return json.dumps({"success": True, "session": session.model_dump(mode="json")}, indent=2)

	@mcp.tool()
	async def list_feature_sessions(project_path: str) -> str:
		"""
		List the sessions of a project with the active one and the queue.

		Args:
			project_path: Path to the project repository
		"""
		project_id = manager.get_project_id(project_path)
		sessions = await manager.list_sessions(project_id)
		active = next((s for s in sessions if s.is_active), None)
		queued = [s for s in sessions if s.queue_position is not None]
		queued.sort(key=lambda s: s.queue_position)
		return json.dumps({
			"success": True,
			"project_id": project_id,
			"count": len(sessions),
			"active": _session_summary(active) if active else None,
			"queue": [_session_summary(s) for s in queued],
			"sessions": [_session_summary(s) for s in sessions],
		}, indent=2)

	@mcp.tool()
	async def transition_session_stage(project_id: str, feature_id: str, target_stage: int) -> str:
		"""
		Move an active session to another stage (1-7). Stage 7 completes it.

		Args:
			project_id: Project id
			feature_id: Feature id
			target_stage: 1 discovery, 2 planning, 3 implementing, 4 pr_creation,
				5 pr_review, 6 final_approval, 7 completed
		"""
		try:
			session = await manager.transition_stage(project_id, feature_id, target_stage)
		except LifecycleError as e:
			return _error(e)
		return json.dumps({"success": True, "session": _session_summary(session)}, indent=2)

	@mcp.tool()
	async def resolve_final_approval(project_id: str, feature_id: str, action: str, feedback: str = "") -> str:
		"""
		Resolve the final approval stage.

		Args:
			project_id: Project id
			feature_id: Feature id
			action: merge, plan_changes or re_review
			feedback: Required for plan_changes and re_review
		"""
		try:
			approval = FinalApprovalAction(action)
		except ValueError:
			return json.dumps({
				"success": False,
				"error": f"Invalid action: {action}",
				"valid_actions": [a.value for a in FinalApprovalAction],
			})
		try:
			session = await manager.resolve_final_approval(project_id, feature_id, approval, feedback or None)
		except LifecycleError as e:
			return _error(e)
		return json.dumps({"success": True, "session": _session_summary(session)}, indent=2)

	@mcp.tool()
	async def backout_session(project_id: str, feature_id: str, action: str, reason: str = "user_requested") -> str:
		"""
		Pause or abandon a session. The next queued session is promoted when
		the active slot frees up.

		Args:
			project_id: Project id
			feature_id: Feature id
			action: pause or abandon
			reason: user_requested, blocked, deprioritized or other
		"""
		try:
			backout_action = BackoutAction(action)
			backout_reason = BackoutReason(reason)
		except ValueError as e:
			return json.dumps({"success": False, "error": str(e)})
		try:
			result = await manager.backout_session(project_id, feature_id, backout_action, backout_reason)
		except LifecycleError as e:
			return _error(e)
		return json.dumps({
			"success": True,
			"session": _session_summary(result.session),
			"promoted_session": _session_summary(result.promoted_session) if result.promoted_session else None,
		}, indent=2)

	@mcp.tool()
	async def resume_session(project_id: str, feature_id: str) -> str:
		"""
		Resume a paused session (activated, or queued at the front if another
		session is active).

		Args:
			project_id: Project id
			feature_id: Feature id
		"""
		try:
			result = await manager.resume_session(project_id, feature_id)
		except LifecycleError as e:
			return _error(e)
		return json.dumps({
			"success": True,
			"session": _session_summary(result.session),
			"was_queued": result.was_queued,
		}, indent=2)

	@mcp.tool()
	async def reorder_queue(project_id: str, feature_ids: str) -> str:
		"""
		Reorder a project's queue. Listed features move to the front in order.

		Args:
			project_id: Project id
			feature_ids: Comma-separated feature ids
		"""
		ordered = [f.strip() for f in feature_ids.split(",") if f.strip()]
		queue = await manager.reorder_queue(project_id, ordered)
		return json.dumps({"success": True, "queue": [_session_summary(s) for s in queue]}, indent=2)

	@mcp.tool()
	async def edit_queued_session(project_id: str, feature_id: str, data_version: int, updates: str) -> str:
		"""
		Edit a queued session.

		Args:
			project_id: Project id
			feature_id: Feature id
			data_version: Version you last read (from get_feature_session)
			updates: JSON object of fields to change (title, feature_description,
				acceptance_criteria, affected_files, technical_notes, base_branch, preferences)
		"""
		try:
			changes = json.loads(updates)
		except json.JSONDecodeError as e:
			return json.dumps({"success": False, "error": f"Invalid JSON: {e}"})
		if not isinstance(changes, dict):
			return json.dumps({"success": False, "error": "updates must be a JSON object"})
		try:
			session = await manager.edit_queued_session(project_id, feature_id, data_version, changes)
		except LifecycleError as e:
			return _error(e)
		return json.dumps({"success": True, "session": _session_summary(session)}, indent=2)

	@mcp.tool()
	async def get_spawn_lock_status(project_id: str, feature_id: str) -> str:
		"""
		Check whether an assistant invocation is in flight for a session.

		Args:
			project_id: Project id
			feature_id: Feature id
		"""
		status = manager.locks.get_lock_status(project_id, feature_id)
		if status is None:
			return json.dumps({"success": True, "locked": False})
		return json.dumps({
			"success": True,
			"locked": status.locked,
			"stage": status.stage,
			"elapsed_seconds": round(status.elapsed or 0.0, 1),
		})

	@mcp.tool()
	async def run_session_assistant(project_id: str, feature_id: str, prompt: str) -> str:
		"""
		Run the assistant for a session and apply its output.

		Args:
			project_id: Project id
			feature_id: Feature id
			prompt: Prompt text
		"""
		try:
			run = await manager.run_assistant(project_id, feature_id, prompt)
		except LifecycleError as e:
			return _error(e)
		return json.dumps({
			"success": run.result.success,
			"outcome": run.result.outcome.value,
			"error": run.result.error,
			"decisions": len(run.parsed.decisions),
			"plan_steps": len(run.parsed.plan_steps),
			"steps_completed": [c.id for c in run.parsed.steps_completed],
			"implementation_complete": run.parsed.implementation_complete,
			"pr_url": run.parsed.pr_created.url if run.parsed.pr_created else None,
		}, indent=2)
