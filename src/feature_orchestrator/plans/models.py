"""
Plan Models - Pydantic schemas for the composable plan document.

A composable plan is split into independently validated sections:
- meta: version, owning session, timestamps, approval state
- steps: the step forest, linked by parent_id (ids, never references)
- dependencies: step-to-step edges plus external dependencies
- test_coverage: framework and per-step test requirements
- acceptance_mapping: acceptance criteria mapped to implementing steps

Steps and edges are both keyed by step id, so the two overlapping graphs
(parent forest, dependency edges) are plain id-indexed lookups.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utc_now() -> str:
	"""Current time as an ISO-8601 string."""
	return datetime.now(timezone.utc).isoformat()


class StepStatus(str, Enum):
	"""Status of a plan step."""
	PENDING = "pending"
	IN_PROGRESS = "in_progress"
	COMPLETED = "completed"
	BLOCKED = "blocked"
	SKIPPED = "skipped"
	NEEDS_REVIEW = "needs_review"


class StepComplexity(str, Enum):
	"""Relative implementation effort of a step."""
	LOW = "low"
	MEDIUM = "medium"
	HIGH = "high"


class ExternalDependencyType(str, Enum):
	"""Kind of external dependency a plan relies on."""
	NPM = "npm"
	API = "api"
	SERVICE = "service"
	FILE = "file"
	OTHER = "other"


class PlanMeta(BaseModel):
	"""Plan metadata section."""
	version: str = Field(default="1.0.0")
	session_id: str = Field(default="", description="Owning session id")
	created_at: str = Field(default_factory=utc_now)
	updated_at: str = Field(default_factory=utc_now)
	is_approved: bool = Field(default=False)
	review_count: int = Field(default=0, description="Number of plan review rounds")


class PlanStep(BaseModel):
	"""A single implementation step."""
	id: str = Field(description="Unique step identifier (e.g., 'step-1')")
	parent_id: Optional[str] = Field(default=None, description="Parent step id, None for roots")
	order_index: int = Field(default=0)
	title: str = Field(default="")
	description: str = Field(default="")
	status: StepStatus = Field(default=StepStatus.PENDING)
	complexity: Optional[StepComplexity] = Field(default=None)
	acceptance_criteria_ids: list[str] = Field(default_factory=list)
	estimated_files: list[str] = Field(default_factory=list)
	metadata: dict[str, Any] = Field(default_factory=dict)


class StepDependency(BaseModel):
	"""Edge: step_id cannot start before depends_on is done."""
	step_id: str
	depends_on: str
	reason: Optional[str] = None


class ExternalDependency(BaseModel):
	"""A package, API, service or file the plan relies on."""
	name: str
	type: ExternalDependencyType = Field(default=ExternalDependencyType.OTHER)
	version: Optional[str] = None
	reason: str = Field(default="")
	required_by: list[str] = Field(default_factory=list, description="Step ids needing this dependency")


class PlanDependencies(BaseModel):
	"""Dependencies section."""
	step_dependencies: list[StepDependency] = Field(default_factory=list)
	external_dependencies: list[ExternalDependency] = Field(default_factory=list)


class StepCoverage(BaseModel):
	"""Test requirements for a single step."""
	step_id: str
	required_test_types: list[str] = Field(default_factory=list)
	coverage_target: Optional[float] = None


class PlanTestCoverage(BaseModel):
	"""Test coverage section."""
	framework: str = Field(default="unknown")
	required_test_types: list[str] = Field(default_factory=lambda: ["unit"])
	step_coverage: list[StepCoverage] = Field(default_factory=list)
	global_coverage_target: Optional[float] = None


class AcceptanceCriterionMapping(BaseModel):
	"""One acceptance criterion and the steps implementing it."""
	criterion_id: str
	criterion_text: str
	implementing_step_ids: list[str] = Field(default_factory=list)
	is_fully_covered: bool = Field(default=False)


class PlanAcceptanceMapping(BaseModel):
	"""Acceptance mapping section."""
	mappings: list[AcceptanceCriterionMapping] = Field(default_factory=list)
	updated_at: str = Field(default_factory=utc_now)


class ValidationStatus(BaseModel):
	"""Cached per-section validation flags."""
	meta: bool = False
	steps: bool = False
	dependencies: bool = False
	test_coverage: bool = False
	acceptance_mapping: bool = False
	overall: bool = False


class ComposablePlan(BaseModel):
	"""Complete plan document."""
	meta: PlanMeta = Field(default_factory=PlanMeta)
	steps: list[PlanStep] = Field(default_factory=list)
	dependencies: PlanDependencies = Field(default_factory=PlanDependencies)
	test_coverage: PlanTestCoverage = Field(default_factory=PlanTestCoverage)
	acceptance_mapping: PlanAcceptanceMapping = Field(default_factory=PlanAcceptanceMapping)
	validation_status: ValidationStatus = Field(default_factory=ValidationStatus)

	def step_index(self) -> dict[str, PlanStep]:
		"""Steps keyed by id."""
		return {step.id: step for step in self.steps}

	def get_step(self, step_id: str) -> Optional[PlanStep]:
		return self.step_index().get(step_id)

	def children_of(self) -> dict[str, list[str]]:
		"""Parent id to child ids, in step order."""
		children: dict[str, list[str]] = {}
		for step in self.steps:
			if step.parent_id:
				children.setdefault(step.parent_id, []).append(step.id)
		return children

	def dependency_graph(self) -> dict[str, list[str]]:
		"""Adjacency list: step id to the ids it depends on."""
		graph: dict[str, list[str]] = {}
		for edge in self.dependencies.step_dependencies:
			graph.setdefault(edge.step_id, []).append(edge.depends_on)
		return graph

	def descendant_ids(self, step_ids: list[str]) -> list[str]:
		"""All transitive children of the given steps (excluding the steps themselves).

		Tolerates parent cycles in malformed plans.
		"""
		children = self.children_of()
		roots = set(step_ids)
		seen: set[str] = set()
		result: list[str] = []
		stack = list(reversed(step_ids))
		while stack:
			current = stack.pop()
			if current in seen:
				continue
			seen.add(current)
			for child in children.get(current, []):
				if child not in seen:
					if child not in roots:
						result.append(child)
					stack.append(child)
		return result

	def remove_steps(self, step_ids: list[str]) -> list[str]:
		"""Remove steps, their descendants and every reference to them.

		Returns:
			Ids actually removed, in plan order
		"""
		doomed = set(step_ids) | set(self.descendant_ids(step_ids))
		removed = [s.id for s in self.steps if s.id in doomed]
		if not removed:
			return []

		self.steps = [s for s in self.steps if s.id not in doomed]
		for index, step in enumerate(self.steps):
			step.order_index = index
		self.dependencies.step_dependencies = [
			e for e in self.dependencies.step_dependencies
			if e.step_id not in doomed and e.depends_on not in doomed
		]
		for ext in self.dependencies.external_dependencies:
			ext.required_by = [s for s in ext.required_by if s not in doomed]
		self.test_coverage.step_coverage = [
			c for c in self.test_coverage.step_coverage if c.step_id not in doomed
		]
		for mapping in self.acceptance_mapping.mappings:
			mapping.implementing_step_ids = [s for s in mapping.implementing_step_ids if s not in doomed]
		self.meta.updated_at = utc_now()
		return removed
