"""Plan and assistant-output tools."""

import json
from dataclasses import asdict
from typing import Optional

from mcp.server.fastmcp import FastMCP

from ..config import Config
from ..markers.parser import get_output_parser
from ..plans.validator import get_plan_validator
from ..sessions.errors import LifecycleError
from ..sessions.manager import SessionManager, get_session_manager


def register_plans_tools(mcp: FastMCP, config: Config, manager: Optional[SessionManager] = None) -> None:
	"""Register plan tools."""
	manager = manager or get_session_manager(config)

	@mcp.tool()
	async def get_feature_plan(project_id: str, feature_id: str) -> str:
		"""
		Get a session's plan. Legacy plans are migrated on read.

		Args:
			project_id: Project id
			feature_id: Feature id
		"""
		plan = await manager.get_plan(project_id, feature_id)
		if plan is None:
			return json.dumps({"success": False, "error": f"No plan for {project_id}/{feature_id}"})
		return json.dumps({"success": True, "plan": plan.model_dump(mode="json")}, indent=2)

	@mcp.tool()
	async def validate_plan_document(plan_json: str) -> str:
		"""
		Validate a composable plan document without storing it.

		Args:
			plan_json: The plan as a JSON object
		"""
		try:
			document = json.loads(plan_json)
		except json.JSONDecodeError as e:
			return json.dumps({"success": False, "error": f"Invalid JSON: {e}"})

		validator = get_plan_validator()
		result = validator.validate_plan(document)
		return json.dumps({
			"success": True,
			"valid": result.overall,
			"sections": result.to_dict(),
			"context": "" if result.overall else validator.generate_validation_context(document),
		}, indent=2)

	@mcp.tool()
	async def check_feature_plan(project_id: str, feature_id: str) -> str:
		"""
		Check whether a session's plan is complete enough to implement.
		Each check counts against the plan review limit.

		Args:
			project_id: Project id
			feature_id: Feature id
		"""
		try:
			completeness = await manager.check_plan(project_id, feature_id)
		except LifecycleError as e:
			return json.dumps({"success": False, "error": str(e), "code": e.code})
		return json.dumps({
			"success": True,
			"complete": completeness.complete,
			"missing_context": completeness.missing_context,
		}, indent=2)

	@mcp.tool()
	async def approve_feature_plan(project_id: str, feature_id: str) -> str:
		"""
		Approve a session's plan so implementation can start.

		Args:
			project_id: Project id
			feature_id: Feature id
		"""
		try:
			plan = await manager.approve_plan(project_id, feature_id)
		except LifecycleError as e:
			return json.dumps({"success": False, "error": str(e), "code": e.code})
		return json.dumps({"success": True, "step_count": len(plan.steps), "is_approved": plan.meta.is_approved})

	@mcp.tool()
	async def parse_assistant_output(text: str) -> str:
		"""
		Extract structured markers (decisions, plan steps, completions, PR and
		CI status) from assistant output. Never fails; unrecognized text is ignored.

		Args:
			text: Raw assistant output
		"""
		parsed = get_output_parser().parse(text)
		return json.dumps({"success": True, "parsed": asdict(parsed)}, indent=2, default=str)

	@mcp.tool()
	async def apply_assistant_output(project_id: str, feature_id: str, text: str) -> str:
		"""
		Parse assistant output and apply it to a session (plan, completed
		steps, PR url).

		Args:
			project_id: Project id
			feature_id: Feature id
			text: Raw assistant output
		"""
		try:
			parsed = await manager.process_output(project_id, feature_id, text)
		except LifecycleError as e:
			return json.dumps({"success": False, "error": str(e), "code": e.code})
		return json.dumps({
			"success": True,
			"plan_steps": len(parsed.plan_steps),
			"steps_completed": [c.id for c in parsed.steps_completed],
			"removed_step_ids": parsed.removed_step_ids,
			"pr_url": parsed.pr_created.url if parsed.pr_created else None,
		}, indent=2)
