"""Shared test fixtures and helpers for feature-orchestrator tests."""

import asyncio
from pathlib import Path
from typing import Callable, Optional

from feature_orchestrator.assistant import AssistantOutcome, AssistantResult
from feature_orchestrator.config import Config
from feature_orchestrator.events import Event, EventBroadcaster
from feature_orchestrator.plans.models import (
	AcceptanceCriterionMapping,
	ComposablePlan,
	PlanAcceptanceMapping,
	PlanDependencies,
	PlanMeta,
	PlanStep,
	PlanTestCoverage,
	StepComplexity,
	StepCoverage,
	StepDependency,
)
from feature_orchestrator.sessions.lock import SpawnLockRegistry
from feature_orchestrator.sessions.manager import SessionManager
from feature_orchestrator.sessions.models import CreateSessionInput
from feature_orchestrator.storage import FileStorage

LONG_DESCRIPTION = "Implement the change in the service layer and cover it with focused unit tests."


def capture_tools(config, register_fn: Callable, *args) -> dict:
	"""Register tools on a mock MCP and return the captured tool functions.

	Args:
		config: Config object to pass to the registration function
		register_fn: The registration function (e.g., register_session_tools)
		*args: Extra positional arguments for register_fn (e.g., a manager)

	Returns:
		Dict mapping tool name to the tool function
	"""
	captured = {}

	class MockMCP:
		def tool(self):
			def decorator(fn):
				captured[fn.__name__] = fn
				return fn
			return decorator

	register_fn(MockMCP(), config, *args)
	return captured


def make_config(tmp_path: Path) -> Config:
	"""Config rooted in a temporary directory."""
	config = Config(config_dir=tmp_path / "config", data_dir=tmp_path / "data")
	config.ensure_dirs()
	return config


def make_step(
	step_id: str,
	parent_id: Optional[str] = None,
	description: str = LONG_DESCRIPTION,
	complexity: Optional[StepComplexity] = StepComplexity.MEDIUM,
	order_index: int = 0,
) -> PlanStep:
	return PlanStep(
		id=step_id,
		parent_id=parent_id,
		order_index=order_index,
		title=f"Work for {step_id}",
		description=description,
		complexity=complexity,
	)


def make_plan(step_ids: tuple[str, ...] = ("step-1", "step-2", "step-3"), session_id: str = "session-1") -> ComposablePlan:
	"""Create a plan that passes validation: a chain of steps, each depending on the previous."""
	steps = [make_step(step_id, order_index=i) for i, step_id in enumerate(step_ids)]
	return ComposablePlan(
		meta=PlanMeta(session_id=session_id),
		steps=steps,
		dependencies=PlanDependencies(
			step_dependencies=[
				StepDependency(step_id=later, depends_on=earlier, reason="Builds on earlier work")
				for earlier, later in zip(step_ids, step_ids[1:])
			],
		),
		test_coverage=PlanTestCoverage(
			framework="pytest",
			required_test_types=["unit"],
			step_coverage=[StepCoverage(step_id=s, required_test_types=["unit"]) for s in step_ids],
			global_coverage_target=80,
		),
		acceptance_mapping=PlanAcceptanceMapping(
			mappings=[
				AcceptanceCriterionMapping(
					criterion_id="AC-1",
					criterion_text="The feature works end to end",
					implementing_step_ids=list(step_ids),
					is_fully_covered=True,
				),
			],
		),
	)


class FakeAssistant:
	"""Stands in for AssistantProcess; returns a canned result and records prompts."""

	def __init__(self, output: str = "", outcome: AssistantOutcome = AssistantOutcome.SUCCESS):
		self.output = output
		self.outcome = outcome
		self.prompts: list[str] = []
		self.release = asyncio.Event()
		self.started = asyncio.Event()
		self.block = False

	async def run(self, prompt: str, cwd: str, timeout: Optional[float] = None) -> AssistantResult:
		self.prompts.append(prompt)
		self.started.set()
		if self.block:
			await self.release.wait()
		return AssistantResult(
			outcome=self.outcome,
			output=self.output,
			exit_code=0 if self.outcome == AssistantOutcome.SUCCESS else 1,
		)


class EventRecorder:
	"""Subscribes to a broadcaster and keeps every event."""

	def __init__(self, broadcaster: EventBroadcaster):
		self.events: list[Event] = []
		broadcaster.subscribe(self.events.append)

	def names(self) -> list[str]:
		return [e.name.value for e in self.events]


def make_manager(tmp_path: Path, assistant: Optional[FakeAssistant] = None) -> SessionManager:
	"""A session manager with its own storage, locks and broadcaster."""
	config = make_config(tmp_path)
	return SessionManager(
		FileStorage(config.sessions_dir),
		config=config,
		broadcaster=EventBroadcaster(),
		locks=SpawnLockRegistry(),
		assistant=assistant or FakeAssistant(),
	)


def session_input(title: str, project_path: str = "/work/app", **kwargs) -> CreateSessionInput:
	return CreateSessionInput(title=title, project_path=project_path, **kwargs)
