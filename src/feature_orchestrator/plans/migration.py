"""
Plan migration between the legacy flat format and the composable format.

Legacy plans are a flat document:
	{"version", "plan_version", "session_id", "is_approved", "review_count",
	 "created_at", "steps": [...], "test_requirement": {...}}

Migration turns parent links into explicit dependency edges, the legacy test
requirement into a test coverage section, and fills the remaining sections
with defaults, so validation only ever sees the canonical shape.
"""

import logging
from collections.abc import Mapping
from typing import Any, Optional

from .models import (
	ComposablePlan,
	PlanAcceptanceMapping,
	PlanDependencies,
	PlanMeta,
	PlanStep,
	PlanTestCoverage,
	StepComplexity,
	StepCoverage,
	StepDependency,
	utc_now,
)
from .validator import get_plan_validator

logger = logging.getLogger(__name__)

COMPOSABLE_SECTIONS = ("meta", "steps", "dependencies", "test_coverage", "acceptance_mapping", "validation_status")
LEGACY_PARENT_REASON = "Parent-child relationship from legacy plan"
LEGACY_COVERAGE_TARGET = 80
DEFAULT_FRAMEWORK = "unknown"


def is_legacy_plan(plan: Any) -> bool:
	"""A legacy plan carries an integer plan_version and no meta section."""
	if not isinstance(plan, Mapping):
		return False
	version = plan.get("plan_version")
	return isinstance(version, int) and not isinstance(version, bool) and "meta" not in plan


def is_composable_plan(plan: Any) -> bool:
	"""A composable plan has all six sections."""
	if isinstance(plan, ComposablePlan):
		return True
	if not isinstance(plan, Mapping):
		return False
	return all(section in plan for section in COMPOSABLE_SECTIONS)


def _migrate_step(raw: Mapping[str, Any], index: int) -> PlanStep:
	metadata = dict(raw.get("metadata") or {})
	if raw.get("content_hash"):
		metadata.setdefault("content_hash", raw["content_hash"])
	return PlanStep(
		id=str(raw.get("id", f"step-{index + 1}")),
		parent_id=raw.get("parent_id") or None,
		order_index=raw.get("order_index", index),
		title=raw.get("title", ""),
		description=raw.get("description", ""),
		status=raw.get("status", "pending"),
		complexity=raw.get("complexity") or StepComplexity.MEDIUM,
		acceptance_criteria_ids=raw.get("acceptance_criteria_ids") or [],
		estimated_files=raw.get("estimated_files") or [],
		metadata=metadata,
	)


def _legacy_test_coverage(plan: Mapping[str, Any], steps: list[PlanStep]) -> PlanTestCoverage:
	requirement = plan.get("test_requirement")
	if not isinstance(requirement, Mapping):
		return PlanTestCoverage(framework=DEFAULT_FRAMEWORK, global_coverage_target=LEGACY_COVERAGE_TARGET)

	test_types = list(requirement.get("test_types") or ["unit"])
	return PlanTestCoverage(
		framework=requirement.get("existing_framework") or DEFAULT_FRAMEWORK,
		required_test_types=test_types,
		step_coverage=[
			StepCoverage(step_id=step.id, required_test_types=list(test_types), coverage_target=LEGACY_COVERAGE_TARGET)
			for step in steps
		],
		global_coverage_target=LEGACY_COVERAGE_TARGET,
	)


def migrate_to_composable_plan(plan: Mapping[str, Any]) -> ComposablePlan:
	"""Convert a legacy plan document into a composable plan.

	Raises:
		pydantic.ValidationError: If the legacy steps are malformed beyond repair
	"""
	now = utc_now()
	steps = [_migrate_step(raw, index) for index, raw in enumerate(plan.get("steps") or [])]

	migrated = ComposablePlan(
		meta=PlanMeta(
			version=plan.get("version") or "1.0",
			session_id=plan.get("session_id") or "",
			created_at=plan.get("created_at") or now,
			updated_at=now,
			is_approved=bool(plan.get("is_approved", False)),
			review_count=plan.get("review_count") or 0,
		),
		steps=steps,
		dependencies=PlanDependencies(
			step_dependencies=[
				StepDependency(step_id=step.id, depends_on=step.parent_id, reason=LEGACY_PARENT_REASON)
				for step in steps
				if step.parent_id
			],
		),
		test_coverage=_legacy_test_coverage(plan, steps),
		acceptance_mapping=PlanAcceptanceMapping(updated_at=now),
	)
	get_plan_validator().revalidate(migrated)
	return migrated


def ensure_composable_plan(plan: ComposablePlan | Mapping[str, Any]) -> ComposablePlan:
	"""Return plan in composable form, migrating or filling defaults as needed."""
	if isinstance(plan, ComposablePlan):
		return plan
	if is_legacy_plan(plan):
		return migrate_to_composable_plan(plan)
	if "meta" in plan or is_composable_plan(plan):
		# Absent sections pick up model defaults
		return ComposablePlan.model_validate(dict(plan))
	return migrate_to_composable_plan(plan)


def read_plan_with_migration(storage, session_dir: str) -> Optional[ComposablePlan]:
	"""Read session_dir/plan.json, persisting a migrated copy when it was not composable.

	Args:
		storage: Object with read_json(path) / write_json(path, data)
		session_dir: Storage-relative session directory

	Returns:
		The composable plan, or None when no plan exists
	"""
	plan_path = f"{session_dir}/plan.json"
	data = storage.read_json(plan_path)
	if data is None:
		return None
	if is_composable_plan(data):
		return ComposablePlan.model_validate(data)

	migrated = ensure_composable_plan(data)
	storage.write_json(plan_path, migrated.model_dump(mode="json"))
	logger.info(f"Migrated plan to composable format: {session_dir}")
	return migrated


def composable_plan_to_legacy(plan: ComposablePlan) -> dict[str, Any]:
	"""Flatten a composable plan back into the legacy document shape."""
	return {
		"version": plan.meta.version,
		"plan_version": 1,
		"session_id": plan.meta.session_id,
		"is_approved": plan.meta.is_approved,
		"review_count": plan.meta.review_count,
		"created_at": plan.meta.created_at,
		"steps": [
			step.model_dump(mode="json", exclude={"complexity", "acceptance_criteria_ids", "estimated_files"})
			for step in plan.steps
		],
	}
