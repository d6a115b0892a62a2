"""Tests for legacy plan migration."""

from feature_orchestrator.plans.migration import (
	LEGACY_PARENT_REASON,
	composable_plan_to_legacy,
	ensure_composable_plan,
	is_composable_plan,
	is_legacy_plan,
	migrate_to_composable_plan,
	read_plan_with_migration,
)
from feature_orchestrator.plans.models import StepComplexity
from feature_orchestrator.storage import FileStorage

from .helpers import LONG_DESCRIPTION, make_plan


def _legacy_plan(**overrides) -> dict:
	plan = {
		"version": "1.0",
		"plan_version": 2,
		"session_id": "sess-legacy",
		"is_approved": True,
		"review_count": 1,
		"created_at": "2024-01-01T00:00:00+00:00",
		"steps": [
			{"id": "step-1", "title": "Schema", "description": LONG_DESCRIPTION},
			{
				"id": "step-2",
				"parent_id": "step-1",
				"title": "Endpoints",
				"description": LONG_DESCRIPTION,
				"status": "completed",
				"content_hash": "abc123",
			},
		],
		"test_requirement": {"existing_framework": "pytest", "test_types": ["unit", "integration"]},
	}
	plan.update(overrides)
	return plan


class TestDetection:
	def test_legacy_detection(self):
		assert is_legacy_plan(_legacy_plan())
		assert not is_legacy_plan(_legacy_plan(meta={}))
		assert not is_legacy_plan(_legacy_plan(plan_version=True))
		assert not is_legacy_plan(_legacy_plan(plan_version="2"))
		assert not is_legacy_plan(["not", "a", "plan"])

	def test_composable_detection(self):
		assert is_composable_plan(make_plan())
		assert is_composable_plan(make_plan().model_dump(mode="json"))
		assert not is_composable_plan(_legacy_plan())


class TestMigration:
	"""Tests for converting legacy plans."""

	def test_parent_links_become_dependencies(self):
		plan = migrate_to_composable_plan(_legacy_plan())
		edges = plan.dependencies.step_dependencies
		assert len(edges) == 1
		assert (edges[0].step_id, edges[0].depends_on) == ("step-2", "step-1")
		assert edges[0].reason == LEGACY_PARENT_REASON

	def test_meta_and_steps_carried_over(self):
		plan = migrate_to_composable_plan(_legacy_plan())
		assert plan.meta.session_id == "sess-legacy"
		assert plan.meta.is_approved is True
		assert plan.meta.review_count == 1
		assert plan.meta.created_at == "2024-01-01T00:00:00+00:00"
		assert [s.order_index for s in plan.steps] == [0, 1]
		assert all(s.complexity == StepComplexity.MEDIUM for s in plan.steps)
		assert plan.steps[1].metadata["content_hash"] == "abc123"

	def test_test_requirement_becomes_coverage(self):
		coverage = migrate_to_composable_plan(_legacy_plan()).test_coverage
		assert coverage.framework == "pytest"
		assert coverage.required_test_types == ["unit", "integration"]
		assert coverage.global_coverage_target == 80
		assert [c.step_id for c in coverage.step_coverage] == ["step-1", "step-2"]
		assert coverage.step_coverage[0].coverage_target == 80

	def test_missing_test_requirement(self):
		plan = migrate_to_composable_plan(_legacy_plan(test_requirement=None))
		assert plan.test_coverage.framework == "unknown"
		assert plan.test_coverage.step_coverage == []

	def test_migrated_plan_is_revalidated(self):
		plan = migrate_to_composable_plan(_legacy_plan())
		assert plan.validation_status.overall is True

	def test_round_trip_to_legacy_shape(self):
		legacy = composable_plan_to_legacy(make_plan())
		assert legacy["plan_version"] == 1
		assert "complexity" not in legacy["steps"][0]
		assert is_legacy_plan(legacy)


class TestEnsureComposable:
	def test_model_passes_through(self):
		plan = make_plan()
		assert ensure_composable_plan(plan) is plan

	def test_partial_dict_gets_defaults(self):
		plan = ensure_composable_plan({"meta": {"session_id": "s"}, "steps": []})
		assert plan.meta.session_id == "s"
		assert plan.test_coverage.framework == "unknown"


class TestReadWithMigration:
	"""Tests for reading plan.json through the migration layer."""

	def test_missing_plan(self, tmp_path):
		assert read_plan_with_migration(FileStorage(tmp_path), "p/f") is None

	def test_legacy_plan_is_persisted_migrated(self, tmp_path):
		storage = FileStorage(tmp_path)
		storage.write_json("p/f/plan.json", _legacy_plan())

		plan = read_plan_with_migration(storage, "p/f")
		assert plan.meta.session_id == "sess-legacy"

		stored = storage.read_json("p/f/plan.json")
		assert is_composable_plan(stored)
		assert storage.exists("p/f/plan.json.bak")

	def test_composable_plan_not_rewritten(self, tmp_path):
		storage = FileStorage(tmp_path)
		storage.write_json("p/f/plan.json", make_plan().model_dump(mode="json"))

		plan = read_plan_with_migration(storage, "p/f")
		assert [s.id for s in plan.steps] == ["step-1", "step-2", "step-3"]
		assert not storage.exists("p/f/plan.json.bak")
