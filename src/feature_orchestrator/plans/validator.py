"""
Plan Validator - Structural, content and cross-section checks for composable plans.

Validates each section independently, then the invariants spanning sections:
- every non-null parent_id resolves to a step
- every dependency / required_by / step_coverage / mapping reference resolves
- the step dependency graph is acyclic (reports the full cycle)

Every problem is a ValidationIssue carrying its section, a machine-readable
code and the step it concerns, so callers never re-parse message strings.
Validation is pure: the same plan always yields an equal result.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..markers.tokenizer import MARKER_TAGS
from .models import ComposablePlan, ExternalDependencyType, StepComplexity, StepStatus, ValidationStatus

logger = logging.getLogger(__name__)

MIN_DESCRIPTION_LENGTH = 50
MAX_DESCRIPTION_LENGTH = 5000
MAX_TITLE_LENGTH = 200

PLACEHOLDER_PATTERNS = [
	re.compile(r"\bTBD\b", re.IGNORECASE),
	re.compile(r"\bTODO\b", re.IGNORECASE),
	re.compile(r"\bFIXME\b", re.IGNORECASE),
	re.compile(r"\bXXX\b", re.IGNORECASE),
	re.compile(r"\bPLACEHOLDER\b", re.IGNORECASE),
	re.compile(r"\bTO BE DETERMINED\b", re.IGNORECASE),
	re.compile(r"\bTO BE DEFINED\b", re.IGNORECASE),
	re.compile(r"\bNEEDS?\s+(TO BE\s+)?(FILLED|COMPLETED|WRITTEN)\b", re.IGNORECASE),
	re.compile(r"\[\.{3,}\]"),
	re.compile(r"<\.{3,}>"),
]

_MARKER_NAMES = "|".join(sorted(MARKER_TAGS, key=len, reverse=True))
# Unescaped opening or closing tag, with or without attributes
MARKER_PATTERN = re.compile(rf"(?<!\\)\[/?(?:{_MARKER_NAMES})(?:\s[^\]]*)?\]", re.IGNORECASE)


class PlanSection(str, Enum):
	"""Independently validated plan sections."""
	META = "meta"
	STEPS = "steps"
	DEPENDENCIES = "dependencies"
	TEST_COVERAGE = "test_coverage"
	ACCEPTANCE_MAPPING = "acceptance_mapping"


SECTION_TITLES = {
	PlanSection.META: "Plan Metadata",
	PlanSection.STEPS: "Plan Steps",
	PlanSection.DEPENDENCIES: "Dependencies",
	PlanSection.TEST_COVERAGE: "Test Coverage",
	PlanSection.ACCEPTANCE_MAPPING: "Acceptance Criteria Mapping",
}


class IssueCode(str, Enum):
	"""Machine-readable validation issue kinds."""
	MISSING_SECTION = "missing_section"
	REQUIRED_FIELD = "required_field"
	INVALID_VALUE = "invalid_value"
	INVALID_TIMESTAMP = "invalid_timestamp"
	NO_STEPS = "no_steps"
	DUPLICATE_STEP_ID = "duplicate_step_id"
	DESCRIPTION_TOO_SHORT = "description_too_short"
	TEXT_TOO_LONG = "text_too_long"
	PLACEHOLDER_TEXT = "placeholder_text"
	MARKER_TEXT = "marker_text"
	MISSING_COMPLEXITY = "missing_complexity"
	ORPHANED_PARENT = "orphaned_parent"
	UNKNOWN_STEP_REFERENCE = "unknown_step_reference"
	CIRCULAR_DEPENDENCY = "circular_dependency"
	EMPTY_REQUIRED_BY = "empty_required_by"
	MISSING_FRAMEWORK = "missing_framework"
	NO_TEST_TYPES = "no_test_types"
	NO_IMPLEMENTING_STEPS = "no_implementing_steps"


GUIDANCE = {
	IssueCode.MISSING_SECTION: "Provide every plan section: meta, steps, dependencies, test coverage and acceptance mapping.",
	IssueCode.NO_STEPS: "Break the work into at least one concrete [PLAN_STEP].",
	IssueCode.DESCRIPTION_TOO_SHORT: (
		f"Expand each step description to at least {MIN_DESCRIPTION_LENGTH} characters, "
		"stating what changes and where."
	),
	IssueCode.PLACEHOLDER_TEXT: "Replace placeholder text (TBD, TODO, FIXME, [...]) with concrete content.",
	IssueCode.MARKER_TEXT: "Remove control marker syntax from step titles and descriptions.",
	IssueCode.MISSING_COMPLEXITY: "Rate every step's complexity as low, medium or high.",
	IssueCode.ORPHANED_PARENT: (
		"Fix orphaned parent references: each parent must be the id of an existing step, "
		"or null for a top-level step."
	),
	IssueCode.UNKNOWN_STEP_REFERENCE: "Reference only step ids that exist in the plan.",
	IssueCode.CIRCULAR_DEPENDENCY: (
		"Break the circular dependency: remove or reverse one edge in the cycle so steps "
		"can be ordered."
	),
	IssueCode.EMPTY_REQUIRED_BY: "List the steps that need each external dependency in [required by: ...].",
	IssueCode.MISSING_FRAMEWORK: "Name the test framework the project uses (e.g. framework: pytest).",
	IssueCode.NO_TEST_TYPES: "List at least one required test type (unit, integration, e2e).",
	IssueCode.NO_IMPLEMENTING_STEPS: "Map every acceptance criterion to at least one implementing step.",
}


@dataclass
class ValidationIssue:
	"""A single validation problem."""
	section: PlanSection
	code: IssueCode
	message: str
	step_id: Optional[str] = None
	details: dict[str, Any] = field(default_factory=dict)


@dataclass
class SectionResult:
	"""Validation outcome for one section."""
	valid: bool = True
	issues: list[ValidationIssue] = field(default_factory=list)

	@property
	def errors(self) -> list[str]:
		return [issue.message for issue in self.issues]

	def add(self, issue: ValidationIssue) -> None:
		self.issues.append(issue)
		self.valid = False


@dataclass
class PlanValidationResult:
	"""Validation outcome for a whole plan."""
	meta: SectionResult
	steps: SectionResult
	dependencies: SectionResult
	test_coverage: SectionResult
	acceptance_mapping: SectionResult

	@property
	def overall(self) -> bool:
		return all(self.section(s).valid for s in PlanSection)

	def section(self, section: PlanSection) -> SectionResult:
		return getattr(self, section.value)

	@property
	def issues(self) -> list[ValidationIssue]:
		return [issue for s in PlanSection for issue in self.section(s).issues]

	def to_status(self) -> ValidationStatus:
		return ValidationStatus(
			meta=self.meta.valid,
			steps=self.steps.valid,
			dependencies=self.dependencies.valid,
			test_coverage=self.test_coverage.valid,
			acceptance_mapping=self.acceptance_mapping.valid,
			overall=self.overall,
		)

	def to_dict(self) -> dict:
		"""JSON-friendly form."""
		data: dict[str, Any] = {}
		for s in PlanSection:
			result = self.section(s)
			data[s.value] = {
				"valid": result.valid,
				"errors": result.errors,
				"issues": [
					{"code": i.code.value, "message": i.message, "step_id": i.step_id, **i.details}
					for i in result.issues
				],
			}
		data["overall"] = self.overall
		return data


def _nonempty_str(value: Any) -> bool:
	return isinstance(value, str) and bool(value.strip())


def _is_choice(value: Any, choices: set[str]) -> bool:
	return isinstance(value, str) and value in choices


def _is_int(value: Any) -> bool:
	return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
	return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_timestamp(value: Any) -> bool:
	if not isinstance(value, str) or not value:
		return False
	try:
		datetime.fromisoformat(value)
	except ValueError:
		return False
	return True


def contains_placeholder(text: str) -> bool:
	"""Whether text contains placeholder wording like TBD or [...]."""
	return any(p.search(text) for p in PLACEHOLDER_PATTERNS)


def contains_marker(text: str) -> bool:
	"""Whether text contains this system's control marker syntax."""
	return bool(MARKER_PATTERN.search(text))


def find_cycle(graph: Mapping[str, list[str]]) -> Optional[list[str]]:
	"""Find a cycle in an adjacency list using depth-first search.

	Uses an explicit stack instead of recursion, with a recursion-stack set
	marking the nodes on the current path.

	Returns:
		The cycle as an ordered list of ids whose last element repeats the
		first (e.g. ['a', 'b', 'a']), or None when the graph is acyclic
	"""
	visited: set[str] = set()
	nodes = list(graph.keys())
	for targets in graph.values():
		for target in targets:
			if target not in graph:
				nodes.append(target)

	for root in nodes:
		if root in visited:
			continue
		path: list[str] = [root]
		on_path: set[str] = {root}
		iterators = [iter(graph.get(root, []))]
		visited.add(root)

		while iterators:
			neighbor = next(iterators[-1], None)
			if neighbor is None:
				iterators.pop()
				on_path.discard(path.pop())
				continue
			if neighbor in on_path:
				start = path.index(neighbor)
				return path[start:] + [neighbor]
			if neighbor in visited:
				continue
			visited.add(neighbor)
			path.append(neighbor)
			on_path.add(neighbor)
			iterators.append(iter(graph.get(neighbor, [])))
	return None


class PlanValidator:
	"""
	Validates composable plans section by section.

	Accepts either a ComposablePlan or its JSON-shaped dict, so documents
	read from disk can be checked before they are trusted.
	"""

	def __init__(self, min_description_length: int = MIN_DESCRIPTION_LENGTH):
		self.min_description_length = min_description_length

	def validate_plan(self, plan: ComposablePlan | Mapping[str, Any]) -> PlanValidationResult:
		"""Validate every section and the cross-section invariants."""
		data = self._as_dict(plan)
		steps = data.get("steps")
		step_ids = self._step_ids(steps)

		result = PlanValidationResult(
			meta=self.validate_meta(data.get("meta")),
			steps=self.validate_steps(steps),
			dependencies=self.validate_dependencies(data.get("dependencies"), step_ids),
			test_coverage=self.validate_test_coverage(data.get("test_coverage"), step_ids),
			acceptance_mapping=self.validate_acceptance_mapping(data.get("acceptance_mapping"), step_ids),
		)
		if not result.overall:
			logger.debug(f"Plan validation failed with {len(result.issues)} issue(s)")
		return result

	def revalidate(self, plan: ComposablePlan) -> PlanValidationResult:
		"""Validate and refresh the plan's cached validation_status flags."""
		result = self.validate_plan(plan)
		plan.validation_status = result.to_status()
		return result

	def is_plan_valid(self, plan: ComposablePlan | Mapping[str, Any]) -> bool:
		return self.validate_plan(plan).overall

	# ------------------------------------------------------------------
	# Sections
	# ------------------------------------------------------------------

	def validate_meta(self, meta: Any) -> SectionResult:
		result = SectionResult()
		section = PlanSection.META
		if not isinstance(meta, Mapping):
			result.add(ValidationIssue(section, IssueCode.MISSING_SECTION, "Plan meta section is missing"))
			return result

		for key in ("version", "session_id"):
			if not _nonempty_str(meta.get(key)):
				result.add(ValidationIssue(section, IssueCode.REQUIRED_FIELD, f"meta.{key} is required"))
		for key in ("created_at", "updated_at"):
			if not _is_timestamp(meta.get(key)):
				result.add(ValidationIssue(
					section, IssueCode.INVALID_TIMESTAMP, f"meta.{key} must be an ISO-8601 timestamp",
				))
		if not isinstance(meta.get("is_approved"), bool):
			result.add(ValidationIssue(section, IssueCode.INVALID_VALUE, "meta.is_approved must be a boolean"))
		review_count = meta.get("review_count")
		if not _is_int(review_count) or review_count < 0:
			result.add(ValidationIssue(
				section, IssueCode.INVALID_VALUE, "meta.review_count must be a non-negative integer",
			))
		return result

	def validate_steps(self, steps: Any) -> SectionResult:
		result = SectionResult()
		section = PlanSection.STEPS
		if not isinstance(steps, list):
			result.add(ValidationIssue(section, IssueCode.MISSING_SECTION, "Plan steps section is missing"))
			return result
		if not steps:
			result.add(ValidationIssue(section, IssueCode.NO_STEPS, "Plan must have at least one step"))
			return result

		seen: set[str] = set()
		for index, step in enumerate(steps, start=1):
			if not isinstance(step, Mapping):
				result.add(ValidationIssue(section, IssueCode.INVALID_VALUE, f"Step {index} is not an object"))
				continue
			step_id = step.get("id") if _nonempty_str(step.get("id")) else None
			label = f"Step {index} ({step_id})" if step_id else f"Step {index}"

			if step_id is None:
				result.add(ValidationIssue(section, IssueCode.REQUIRED_FIELD, f"{label}: id is required"))
			elif step_id in seen:
				result.add(ValidationIssue(
					section, IssueCode.DUPLICATE_STEP_ID, f"{label}: duplicate step id", step_id=step_id,
				))
			else:
				seen.add(step_id)

			for issue in self._check_step_fields(step, label, step_id):
				result.add(issue)

		# Parent references resolve within the step set
		for index, step in enumerate(steps, start=1):
			if not isinstance(step, Mapping):
				continue
			parent_id = step.get("parent_id")
			if isinstance(parent_id, str) and parent_id not in seen:
				step_id = step.get("id")
				result.add(ValidationIssue(
					section,
					IssueCode.ORPHANED_PARENT,
					f"Step {index} ({step_id}): parent step '{parent_id}' does not exist (orphaned parent reference)",
					step_id=step_id,
					details={"parent_id": parent_id},
				))
		return result

	def _check_step_fields(self, step: Mapping, label: str, step_id: Optional[str]) -> list[ValidationIssue]:
		section = PlanSection.STEPS
		issues: list[ValidationIssue] = []

		def issue(code: IssueCode, message: str) -> None:
			issues.append(ValidationIssue(section, code, f"{label}: {message}", step_id=step_id))

		parent_id = step.get("parent_id")
		if parent_id is not None and not isinstance(parent_id, str):
			issue(IssueCode.INVALID_VALUE, "parent_id must be a string or null")

		order_index = step.get("order_index")
		if not _is_int(order_index) or order_index < 0:
			issue(IssueCode.INVALID_VALUE, "order_index must be a non-negative integer")

		title = step.get("title")
		if not _nonempty_str(title):
			issue(IssueCode.REQUIRED_FIELD, "title is required")
		else:
			if len(title) > MAX_TITLE_LENGTH:
				issue(IssueCode.TEXT_TOO_LONG, f"title must be at most {MAX_TITLE_LENGTH} characters")
			if contains_placeholder(title):
				issue(IssueCode.PLACEHOLDER_TEXT, "title contains placeholder text")
			if contains_marker(title):
				issue(IssueCode.MARKER_TEXT, "title contains control marker syntax")

		description = step.get("description")
		if not isinstance(description, str):
			issue(IssueCode.REQUIRED_FIELD, "description is required")
		else:
			if len(description) < self.min_description_length:
				issue(
					IssueCode.DESCRIPTION_TOO_SHORT,
					f"description must be at least {self.min_description_length} characters "
					f"(got {len(description)})",
				)
			elif len(description) > MAX_DESCRIPTION_LENGTH:
				issue(IssueCode.TEXT_TOO_LONG, f"description must be at most {MAX_DESCRIPTION_LENGTH} characters")
			if contains_placeholder(description):
				issue(IssueCode.PLACEHOLDER_TEXT, "description contains placeholder text")
			if contains_marker(description):
				issue(IssueCode.MARKER_TEXT, "description contains control marker syntax")

		if not _is_choice(step.get("status"), {s.value for s in StepStatus}):
			issue(IssueCode.INVALID_VALUE, f"status '{step.get('status')}' is not a valid step status")

		complexity = step.get("complexity")
		if complexity is not None and not _is_choice(complexity, {c.value for c in StepComplexity}):
			issue(IssueCode.INVALID_VALUE, f"complexity '{complexity}' must be low, medium or high")

		for key in ("acceptance_criteria_ids", "estimated_files"):
			value = step.get(key)
			if value is not None and not (isinstance(value, list) and all(isinstance(v, str) for v in value)):
				issue(IssueCode.INVALID_VALUE, f"{key} must be a list of strings")

		metadata = step.get("metadata")
		if metadata is not None and not isinstance(metadata, Mapping):
			issue(IssueCode.INVALID_VALUE, "metadata must be an object")
		return issues

	def validate_dependencies(self, dependencies: Any, step_ids: Optional[set[str]] = None) -> SectionResult:
		result = SectionResult()
		section = PlanSection.DEPENDENCIES
		if not isinstance(dependencies, Mapping):
			result.add(ValidationIssue(section, IssueCode.MISSING_SECTION, "Plan dependencies section is missing"))
			return result

		edges = dependencies.get("step_dependencies")
		externals = dependencies.get("external_dependencies")
		if not isinstance(edges, list):
			result.add(ValidationIssue(section, IssueCode.MISSING_SECTION, "step_dependencies must be a list"))
			edges = []
		if not isinstance(externals, list):
			result.add(ValidationIssue(section, IssueCode.MISSING_SECTION, "external_dependencies must be a list"))
			externals = []

		graph: dict[str, list[str]] = {}
		for index, edge in enumerate(edges, start=1):
			if not isinstance(edge, Mapping) or not _nonempty_str(edge.get("step_id")) or not _nonempty_str(edge.get("depends_on")):
				result.add(ValidationIssue(
					section, IssueCode.REQUIRED_FIELD, f"Dependency {index}: step_id and depends_on are required",
				))
				continue
			step_id, depends_on = edge["step_id"], edge["depends_on"]
			graph.setdefault(step_id, []).append(depends_on)
			if step_ids is not None:
				for ref in (step_id, depends_on):
					if ref not in step_ids:
						result.add(ValidationIssue(
							section,
							IssueCode.UNKNOWN_STEP_REFERENCE,
							f"Dependency {step_id} -> {depends_on} references unknown step '{ref}'",
							step_id=ref,
						))

		valid_types = {t.value for t in ExternalDependencyType}
		for index, ext in enumerate(externals, start=1):
			if not isinstance(ext, Mapping):
				result.add(ValidationIssue(section, IssueCode.INVALID_VALUE, f"External dependency {index} is not an object"))
				continue
			name = ext.get("name") if _nonempty_str(ext.get("name")) else f"#{index}"
			if not _nonempty_str(ext.get("name")):
				result.add(ValidationIssue(section, IssueCode.REQUIRED_FIELD, f"External dependency {index}: name is required"))
			if not _is_choice(ext.get("type"), valid_types):
				result.add(ValidationIssue(
					section,
					IssueCode.INVALID_VALUE,
					f"External dependency '{name}': type must be one of {', '.join(sorted(valid_types))}",
				))
			required_by = ext.get("required_by")
			if not isinstance(required_by, list) or not required_by:
				result.add(ValidationIssue(
					section,
					IssueCode.EMPTY_REQUIRED_BY,
					f"External dependency '{name}' must be required by at least one step",
				))
			else:
				for ref in required_by:
					if not isinstance(ref, str):
						result.add(ValidationIssue(
							section,
							IssueCode.INVALID_VALUE,
							f"External dependency '{name}': required_by entries must be step ids",
						))
					elif step_ids is not None and ref not in step_ids:
						result.add(ValidationIssue(
							section,
							IssueCode.UNKNOWN_STEP_REFERENCE,
							f"External dependency '{name}' is required by unknown step '{ref}'",
							step_id=ref,
						))

		cycle = find_cycle(graph)
		if cycle:
			result.add(ValidationIssue(
				section,
				IssueCode.CIRCULAR_DEPENDENCY,
				f"Circular dependency detected: {' -> '.join(cycle)}",
				step_id=cycle[0],
				details={"cycle": cycle},
			))
		return result

	def validate_test_coverage(self, coverage: Any, step_ids: Optional[set[str]] = None) -> SectionResult:
		result = SectionResult()
		section = PlanSection.TEST_COVERAGE
		if not isinstance(coverage, Mapping):
			result.add(ValidationIssue(section, IssueCode.MISSING_SECTION, "Plan test coverage section is missing"))
			return result

		if not _nonempty_str(coverage.get("framework")):
			result.add(ValidationIssue(section, IssueCode.MISSING_FRAMEWORK, "Test framework is required"))
		if not self._nonempty_str_list(coverage.get("required_test_types")):
			result.add(ValidationIssue(section, IssueCode.NO_TEST_TYPES, "At least one required test type is needed"))
		if not self._valid_target(coverage.get("global_coverage_target")):
			result.add(ValidationIssue(
				section, IssueCode.INVALID_VALUE, "global_coverage_target must be between 0 and 100",
			))

		step_coverage = coverage.get("step_coverage", [])
		if not isinstance(step_coverage, list):
			result.add(ValidationIssue(section, IssueCode.INVALID_VALUE, "step_coverage must be a list"))
			step_coverage = []
		for index, entry in enumerate(step_coverage, start=1):
			if not isinstance(entry, Mapping) or not _nonempty_str(entry.get("step_id")):
				result.add(ValidationIssue(section, IssueCode.REQUIRED_FIELD, f"Step coverage {index}: step_id is required"))
				continue
			step_id = entry["step_id"]
			if not self._nonempty_str_list(entry.get("required_test_types")):
				result.add(ValidationIssue(
					section,
					IssueCode.NO_TEST_TYPES,
					f"Step coverage for '{step_id}' needs at least one test type",
					step_id=step_id,
				))
			if not self._valid_target(entry.get("coverage_target")):
				result.add(ValidationIssue(
					section,
					IssueCode.INVALID_VALUE,
					f"Step coverage for '{step_id}': coverage_target must be between 0 and 100",
					step_id=step_id,
				))
			if step_ids is not None and step_id not in step_ids:
				result.add(ValidationIssue(
					section,
					IssueCode.UNKNOWN_STEP_REFERENCE,
					f"Step coverage references unknown step '{step_id}'",
					step_id=step_id,
				))
		return result

	def validate_acceptance_mapping(self, mapping: Any, step_ids: Optional[set[str]] = None) -> SectionResult:
		result = SectionResult()
		section = PlanSection.ACCEPTANCE_MAPPING
		if not isinstance(mapping, Mapping):
			result.add(ValidationIssue(section, IssueCode.MISSING_SECTION, "Plan acceptance mapping section is missing"))
			return result

		if not _is_timestamp(mapping.get("updated_at")):
			result.add(ValidationIssue(
				section, IssueCode.INVALID_TIMESTAMP, "acceptance_mapping.updated_at must be an ISO-8601 timestamp",
			))

		entries = mapping.get("mappings")
		if not isinstance(entries, list):
			result.add(ValidationIssue(section, IssueCode.MISSING_SECTION, "mappings must be a list"))
			return result

		for index, entry in enumerate(entries, start=1):
			if not isinstance(entry, Mapping):
				result.add(ValidationIssue(section, IssueCode.INVALID_VALUE, f"Mapping {index} is not an object"))
				continue
			criterion_id = entry.get("criterion_id") if _nonempty_str(entry.get("criterion_id")) else f"#{index}"
			if not _nonempty_str(entry.get("criterion_id")):
				result.add(ValidationIssue(section, IssueCode.REQUIRED_FIELD, f"Mapping {index}: criterion_id is required"))
			if not _nonempty_str(entry.get("criterion_text")):
				result.add(ValidationIssue(
					section, IssueCode.REQUIRED_FIELD, f"Acceptance criterion '{criterion_id}': criterion_text is required",
				))
			implementing = entry.get("implementing_step_ids")
			if not isinstance(implementing, list) or not implementing:
				result.add(ValidationIssue(
					section,
					IssueCode.NO_IMPLEMENTING_STEPS,
					f"Acceptance criterion '{criterion_id}' has no implementing steps",
					details={"criterion_id": criterion_id},
				))
				continue
			for ref in implementing:
				if not isinstance(ref, str):
					result.add(ValidationIssue(
						section,
						IssueCode.INVALID_VALUE,
						f"Acceptance criterion '{criterion_id}': implementing_step_ids entries must be step ids",
					))
				elif step_ids is not None and ref not in step_ids:
					result.add(ValidationIssue(
						section,
						IssueCode.UNKNOWN_STEP_REFERENCE,
						f"Acceptance criterion '{criterion_id}' references unknown step '{ref}'",
						step_id=ref,
					))
		return result

	def validate_steps_complete(self, steps: Any) -> SectionResult:
		"""Stricter step check used before implementation: complexity is required."""
		result = SectionResult()
		if isinstance(steps, ComposablePlan):
			steps = steps.steps
		if not isinstance(steps, list):
			return result
		for step in steps:
			if hasattr(step, "model_dump"):
				step = step.model_dump(mode="json")
			if not isinstance(step, Mapping):
				continue
			if step.get("complexity") is None:
				step_id = step.get("id")
				result.add(ValidationIssue(
					PlanSection.STEPS,
					IssueCode.MISSING_COMPLEXITY,
					f"Step '{step_id}' is missing a complexity rating",
					step_id=step_id,
				))
		return result

	# ------------------------------------------------------------------
	# Reporting
	# ------------------------------------------------------------------

	def get_incomplete_sections(self, plan: ComposablePlan | Mapping[str, Any]) -> list[dict]:
		"""Summaries of every invalid section."""
		result = self.validate_plan(plan)
		return [
			{
				"section": s.value,
				"title": SECTION_TITLES[s],
				"errors": result.section(s).errors,
				"codes": sorted({i.code.value for i in result.section(s).issues}),
			}
			for s in PlanSection
			if not result.section(s).valid
		]

	def generate_validation_context(self, plan: ComposablePlan | Mapping[str, Any]) -> str:
		"""Human-readable rework instructions, or '' when the plan is valid."""
		result = self.validate_plan(plan)
		if result.overall:
			return ""

		lines = ["## Plan Validation Issues", ""]
		lines.append("The plan is incomplete or invalid. Address the following before continuing.")
		lines.append("")
		for s in PlanSection:
			section_result = result.section(s)
			if section_result.valid:
				continue
			lines.append(f"### {SECTION_TITLES[s]}")
			for message in section_result.errors:
				lines.append(f"- {message}")
			lines.append("")

		codes: list[IssueCode] = []
		for found in result.issues:
			if found.code in GUIDANCE and found.code not in codes:
				codes.append(found.code)

		lines.append("### How to Fix")
		for number, code in enumerate(codes, start=1):
			lines.append(f"{number}. {GUIDANCE[code]}")
		lines.append(f"{len(codes) + 1}. Re-emit the complete corrected plan using the plan markers.")
		return "\n".join(lines).rstrip() + "\n"

	# ------------------------------------------------------------------
	# Helpers
	# ------------------------------------------------------------------

	@staticmethod
	def _as_dict(plan: Any) -> Mapping[str, Any]:
		if isinstance(plan, ComposablePlan):
			return plan.model_dump(mode="json")
		if isinstance(plan, Mapping):
			return plan
		return {}

	@staticmethod
	def _step_ids(steps: Any) -> Optional[set[str]]:
		if not isinstance(steps, list):
			return None
		return {s["id"] for s in steps if isinstance(s, Mapping) and _nonempty_str(s.get("id"))}

	@staticmethod
	def _nonempty_str_list(value: Any) -> bool:
		return isinstance(value, list) and bool(value) and all(_nonempty_str(v) for v in value)

	@staticmethod
	def _valid_target(value: Any) -> bool:
		return value is None or (_is_number(value) and 0 <= value <= 100)


_validator: Optional[PlanValidator] = None


def get_plan_validator() -> PlanValidator:
	"""Get or create the global validator instance."""
	global _validator
	if _validator is None:
		_validator = PlanValidator()
	return _validator


def validate_plan(plan: ComposablePlan | Mapping[str, Any]) -> PlanValidationResult:
	"""Validate a plan with the shared validator."""
	return get_plan_validator().validate_plan(plan)
