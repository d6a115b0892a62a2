"""
Composable plan markers.

Parses the sectioned plan format emitted during planning:

	[PLAN_META] key: value lines [/PLAN_META]
	[PLAN_STEP id="step-1" parent="null" complexity="low"] title / description [/PLAN_STEP]
	[PLAN_DEPENDENCIES] step-2 -> step-1: reason ... External Dependencies: ... [/PLAN_DEPENDENCIES]
	[PLAN_TEST_COVERAGE] framework: pytest ... [/PLAN_TEST_COVERAGE]
	[PLAN_ACCEPTANCE_MAPPING] AC-1: 'text' -> step-1, step-2 [fully covered] [/PLAN_ACCEPTANCE_MAPPING]

Only PLAN_STEP is mandatory; absent sections get defaults so assembly never
fails because an optional section is missing.
"""

import logging
import re
from typing import Optional

from ..plans.models import (
	AcceptanceCriterionMapping,
	ComposablePlan,
	ExternalDependency,
	ExternalDependencyType,
	PlanAcceptanceMapping,
	PlanDependencies,
	PlanMeta,
	PlanStep,
	PlanTestCoverage,
	StepCoverage,
	StepDependency,
	ValidationStatus,
	utc_now,
)
from .parser import get_output_parser, line_value, parse_bool, safe_int, split_list
from .tokenizer import MarkerTag, first_block, tokenize

logger = logging.getLogger(__name__)

COMPOSABLE_SECTION_TAGS = ("PLAN_META", "PLAN_DEPENDENCIES", "PLAN_TEST_COVERAGE", "PLAN_ACCEPTANCE_MAPPING")

STEP_EDGE_RE = re.compile(
	r"^\s*[-*]?\s*(\S+)\s+(?:->|depends\s+on)\s+([^\s:]+)(?:\s*:\s*(.+))?$",
	re.IGNORECASE,
)
EXTERNAL_HEADER_RE = re.compile(r"^\s*external(?:\s+dependencies)?\s*:\s*$", re.IGNORECASE)
EXTERNAL_LINE_RE = re.compile(
	r"^\s*[-*]\s*(\S+)\s*\((\w+)\)(?:\s*@\s*([^\s:]+))?\s*:\s*(.+?)(?:\s*\[required\s*by:\s*([^\]]+)\])?\s*$",
	re.IGNORECASE,
)
STEP_COVERAGE_RE = re.compile(r"^\s*[-*]\s*(\S+?)\s*:\s*(.+)$")
MAPPING_RE = re.compile(
	r"^\s*[-*]?\s*(\S+?)\s*:\s*(?:['\"]([^'\"]+)['\"]|((?:(?!->).)+?))\s*->\s*([^\[\n]+?)\s*(?:\[(fully\s*covered|partial)\])?\s*$",
	re.IGNORECASE,
)
COVERAGE_KEYS = {
	"framework", "requiredtesttypes", "required_test_types", "testtypes",
	"globalcoveragetarget", "global_coverage_target", "coverage_target",
}


def _first_value(content: str, *keys: str) -> Optional[str]:
	for key in keys:
		value = line_value(content, key)
		if value:
			return value
	return None


def parse_plan_meta(text: str, tags: Optional[list[MarkerTag]] = None) -> Optional[PlanMeta]:
	"""Parse [PLAN_META]. Returns None when the section is absent."""
	block = first_block(text, "PLAN_META", tags)
	if block is None:
		return None
	content = block.body
	now = utc_now()
	return PlanMeta(
		version=_first_value(content, "version") or "1.0.0",
		session_id=_first_value(content, "sessionId", "session_id") or "",
		created_at=_first_value(content, "createdAt", "created_at") or now,
		updated_at=_first_value(content, "updatedAt", "updated_at") or now,
		is_approved=parse_bool(_first_value(content, "isApproved", "is_approved"), False),
		review_count=safe_int(_first_value(content, "reviewCount", "review_count"), 0),
	)


def _external_type(raw: str) -> ExternalDependencyType:
	try:
		return ExternalDependencyType(raw.lower())
	except ValueError:
		return ExternalDependencyType.OTHER


def parse_plan_dependencies(text: str, tags: Optional[list[MarkerTag]] = None) -> Optional[PlanDependencies]:
	"""Parse [PLAN_DEPENDENCIES] step edges and external dependencies."""
	block = first_block(text, "PLAN_DEPENDENCIES", tags)
	if block is None:
		return None

	deps = PlanDependencies()
	in_external = False
	for line in block.body.strip().split("\n"):
		if EXTERNAL_HEADER_RE.match(line):
			in_external = True
			continue
		if in_external:
			if not line.strip():
				in_external = False
				continue
			ext = EXTERNAL_LINE_RE.match(line)
			if ext:
				deps.external_dependencies.append(ExternalDependency(
					name=ext.group(1),
					type=_external_type(ext.group(2)),
					version=ext.group(3),
					reason=ext.group(4).strip(),
					required_by=split_list(ext.group(5)) or [],
				))
			continue

		edge = STEP_EDGE_RE.match(line)
		if edge:
			reason = edge.group(3).strip() if edge.group(3) else None
			deps.step_dependencies.append(StepDependency(
				step_id=edge.group(1),
				depends_on=edge.group(2),
				reason=reason or None,
			))
	return deps


def parse_plan_test_coverage(text: str, tags: Optional[list[MarkerTag]] = None) -> Optional[PlanTestCoverage]:
	"""Parse [PLAN_TEST_COVERAGE]."""
	block = first_block(text, "PLAN_TEST_COVERAGE", tags)
	if block is None:
		return None
	content = block.body

	types = split_list(_first_value(content, "requiredTestTypes", "required_test_types", "testTypes"))
	target = safe_int(_first_value(content, "globalCoverageTarget", "global_coverage_target", "coverage_target"))

	coverage = PlanTestCoverage(
		framework=_first_value(content, "framework") or "unknown",
		required_test_types=types or ["unit"],
		global_coverage_target=target,
	)
	for line in content.split("\n"):
		match = STEP_COVERAGE_RE.match(line)
		if not match or match.group(1).lower() in COVERAGE_KEYS:
			continue
		coverage.step_coverage.append(StepCoverage(
			step_id=match.group(1),
			required_test_types=split_list(match.group(2)) or [],
		))
	return coverage


def parse_plan_acceptance_mapping(text: str, tags: Optional[list[MarkerTag]] = None) -> Optional[PlanAcceptanceMapping]:
	"""Parse [PLAN_ACCEPTANCE_MAPPING] lines: ID: 'text' -> step, step [fully covered|partial]."""
	block = first_block(text, "PLAN_ACCEPTANCE_MAPPING", tags)
	if block is None:
		return None

	mapping = PlanAcceptanceMapping()
	for line in block.body.split("\n"):
		match = MAPPING_RE.match(line)
		if not match:
			continue
		status = (match.group(5) or "").lower()
		mapping.mappings.append(AcceptanceCriterionMapping(
			criterion_id=match.group(1),
			criterion_text=(match.group(2) or match.group(3) or "").strip(),
			implementing_step_ids=split_list(match.group(4)) or [],
			is_fully_covered=status.startswith("fully"),
		))
	return mapping


def has_composable_plan_markers(text: str) -> bool:
	"""Cheap check for the composable plan format (no full parse)."""
	if not text:
		return False
	return any(f"[{tag}]" in text for tag in COMPOSABLE_SECTION_TAGS)


def parse_composable_plan(text: str, session_id: Optional[str] = None) -> Optional[ComposablePlan]:
	"""Assemble a composable plan from assistant output.

	Args:
		text: Assistant output
		session_id: Used for meta when no [PLAN_META] section is present

	Returns:
		The plan, or None when the output contains no [PLAN_STEP] blocks.
		validation_status records which sections were present; overall is
		always False until the plan is validated.
	"""
	if not text:
		return None
	tags = tokenize(text)
	parsed_steps = get_output_parser().parse_plan_steps(text, tags)
	if not parsed_steps:
		return None

	meta = parse_plan_meta(text, tags)
	dependencies = parse_plan_dependencies(text, tags)
	test_coverage = parse_plan_test_coverage(text, tags)
	acceptance_mapping = parse_plan_acceptance_mapping(text, tags)

	steps = [
		PlanStep(
			id=step.id,
			parent_id=step.parent_id,
			order_index=index,
			title=step.title,
			description=step.description,
			status=step.status,
			complexity=step.complexity,
			acceptance_criteria_ids=step.acceptance_criteria_ids or [],
			estimated_files=step.estimated_files or [],
		)
		for index, step in enumerate(parsed_steps)
	]

	meta_present = meta is not None
	if meta is None:
		meta = PlanMeta(session_id=session_id or "")
	elif not meta.session_id and session_id:
		meta.session_id = session_id

	logger.debug(
		f"Parsed composable plan: {len(steps)} steps, "
		f"sections present: meta={meta_present}, "
		f"dependencies={dependencies is not None}, "
		f"test_coverage={test_coverage is not None}, "
		f"acceptance_mapping={acceptance_mapping is not None}"
	)

	return ComposablePlan(
		meta=meta,
		steps=steps,
		dependencies=dependencies or PlanDependencies(),
		test_coverage=test_coverage or PlanTestCoverage(),
		acceptance_mapping=acceptance_mapping or PlanAcceptanceMapping(),
		validation_status=ValidationStatus(
			meta=meta_present,
			steps=True,
			dependencies=dependencies is not None,
			test_coverage=test_coverage is not None,
			acceptance_mapping=acceptance_mapping is not None,
			overall=False,
		),
	)
