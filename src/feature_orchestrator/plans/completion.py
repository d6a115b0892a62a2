"""
Plan completeness checks run before leaving the planning stage.

Builds the rework context handed back to the assistant when a plan is not
ready for implementation. All details come from structured validation
issues; no message parsing.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

from .models import ComposablePlan
from .validator import IssueCode, PlanSection, PlanValidationResult, PlanValidator, SectionResult, get_plan_validator

logger = logging.getLogger(__name__)

NO_PLAN_CONTEXT = "No plan was found for this session. Create a plan using the plan markers first."


@dataclass
class PlanCompleteness:
	"""Whether a plan may move on to implementation."""
	complete: bool
	missing_context: str
	validation: Optional[PlanValidationResult] = None


@dataclass
class RepromptContext:
	"""Structured summary of what a plan still lacks."""
	summary: str
	incomplete_sections: list[str] = field(default_factory=list)
	steps_lacking_complexity: list[str] = field(default_factory=list)
	unmapped_acceptance_criteria: list[str] = field(default_factory=list)
	insufficient_descriptions: list[str] = field(default_factory=list)
	detailed_context: str = ""


def check_plan_completeness(
	plan: ComposablePlan | Mapping[str, Any] | None,
	validator: Optional[PlanValidator] = None,
) -> PlanCompleteness:
	"""Validate a plan and produce rework context when it is incomplete."""
	if not plan:
		return PlanCompleteness(complete=False, missing_context=NO_PLAN_CONTEXT)

	validator = validator or get_plan_validator()
	result = validator.validate_plan(plan)
	context = "" if result.overall else validator.generate_validation_context(plan)
	return PlanCompleteness(complete=result.overall, missing_context=context, validation=result)


def should_return_to_planning(result: PlanValidationResult) -> bool:
	return not result.overall


def build_reprompt_context(
	result: PlanValidationResult,
	plan: ComposablePlan | None = None,
	validator: Optional[PlanValidator] = None,
) -> RepromptContext:
	"""Summarize what needs rework, for the next planning prompt.

	Args:
		result: Validation result for the plan
		plan: The plan itself; when given, steps lacking complexity are listed too
		validator: Validator to use for the complexity check
	"""
	incomplete = [s.value for s in PlanSection if not result.section(s).valid]

	lacking_complexity: list[str] = []
	if plan is not None:
		complete = (validator or get_plan_validator()).validate_steps_complete(plan.steps)
		lacking_complexity = [i.step_id for i in complete.issues if i.step_id]
		if lacking_complexity and PlanSection.STEPS.value not in incomplete:
			incomplete.append(PlanSection.STEPS.value)

	insufficient = _step_ids_with(result.steps, IssueCode.DESCRIPTION_TOO_SHORT)
	unmapped = [
		str(i.details.get("criterion_id"))
		for i in result.acceptance_mapping.issues
		if i.code == IssueCode.NO_IMPLEMENTING_STEPS
	]

	parts = []
	if incomplete:
		parts.append(f"{len(incomplete)} incomplete section(s): {', '.join(incomplete)}")
	if lacking_complexity:
		parts.append(f"{len(lacking_complexity)} step(s) lacking complexity")
	if unmapped:
		parts.append(f"{len(unmapped)} unmapped acceptance criteria")
	if insufficient:
		parts.append(f"{len(insufficient)} step(s) with insufficient descriptions")
	summary = "; ".join(parts) if parts else "Plan is complete"

	lines: list[str] = []
	if incomplete:
		lines.append(f"Incomplete sections: {', '.join(incomplete)}")
	if lacking_complexity:
		lines.append(f"Steps missing complexity rating: {', '.join(lacking_complexity)}")
	if unmapped:
		lines.append(f"Acceptance criteria without implementing steps: {', '.join(unmapped)}")
	if insufficient:
		lines.append(f"Steps with descriptions that are too short: {', '.join(insufficient)}")
	for issue in result.issues:
		if issue.code not in (IssueCode.DESCRIPTION_TOO_SHORT, IssueCode.NO_IMPLEMENTING_STEPS):
			lines.append(f"- {issue.message}")

	return RepromptContext(
		summary=summary,
		incomplete_sections=incomplete,
		steps_lacking_complexity=lacking_complexity,
		unmapped_acceptance_criteria=unmapped,
		insufficient_descriptions=insufficient,
		detailed_context="\n".join(lines),
	)


def _step_ids_with(section: SectionResult, code: IssueCode) -> list[str]:
	ids: list[str] = []
	for issue in section.issues:
		if issue.code == code and issue.step_id and issue.step_id not in ids:
			ids.append(issue.step_id)
	return ids
