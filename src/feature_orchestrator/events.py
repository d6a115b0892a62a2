"""
Event Broadcaster - Fire-and-forget session events.

Events are addressed to a room: "{project_id}/{feature_id}" for session
events, "{project_id}" for project-wide events (queue reordering). The
transport is whatever subscribes; the lifecycle never waits on delivery
and a failing listener never reaches the caller.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


class EventName(str, Enum):
	"""Events emitted by the session lifecycle."""
	STAGE_CHANGED = "stage.changed"
	EXECUTION_STATUS = "execution.status"
	STEP_STARTED = "step.started"
	STEP_COMPLETED = "step.completed"
	IMPLEMENTATION_PROGRESS = "implementation.progress"
	PLAN_UPDATED = "plan.updated"
	QUEUE_REORDERED = "queue.reordered"
	SESSION_UPDATED = "session.updated"


@dataclass
class Event:
	"""A broadcast event."""
	name: EventName
	room: str
	data: dict[str, Any] = field(default_factory=dict)
	timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


Listener = Callable[[Event], Union[None, Awaitable[None]]]


def session_room(project_id: str, feature_id: str) -> str:
	return f"{project_id}/{feature_id}"


class EventBroadcaster:
	"""Delivers events to subscribed listeners without blocking the sender."""

	def __init__(self):
		self._listeners: list[tuple[Optional[str], Listener]] = []

	def subscribe(self, listener: Listener, room: Optional[str] = None) -> None:
		"""Register a listener for one room, or for every room when room is None."""
		self._listeners.append((room, listener))

	def unsubscribe(self, listener: Listener) -> None:
		self._listeners = [(r, cb) for r, cb in self._listeners if cb is not listener]

	def emit(self, name: EventName, room: str, data: Optional[dict[str, Any]] = None) -> Event:
		"""Send an event. Coroutine listeners are scheduled, never awaited."""
		event = Event(name=name, room=room, data=data or {})
		for listener_room, listener in list(self._listeners):
			if listener_room is not None and listener_room != room:
				continue
			try:
				outcome = listener(event)
				if inspect.isawaitable(outcome):
					self._schedule(outcome, event)
			except Exception as e:
				logger.warning(f"Listener failed for {event.name.value} in {room}: {e}")
		return event

	def _schedule(self, awaitable: Awaitable[None], event: Event) -> None:
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			logger.warning(f"No running loop for async listener of {event.name.value}; dropped")
			if inspect.iscoroutine(awaitable):
				awaitable.close()
			return
		task = loop.create_task(awaitable)
		task.add_done_callback(self._log_task_failure)

	@staticmethod
	def _log_task_failure(task: asyncio.Task) -> None:
		if not task.cancelled() and task.exception() is not None:
			logger.warning(f"Async listener failed: {task.exception()}")

	# Convenience emitters

	def stage_changed(self, session, previous_stage: int) -> Event:
		return self.emit(EventName.STAGE_CHANGED, session_room(session.project_id, session.feature_id), {
			"session_id": session.id,
			"previous_stage": previous_stage,
			"current_stage": session.current_stage,
			"status": session.status.value,
		})

	def session_updated(self, session) -> Event:
		return self.emit(EventName.SESSION_UPDATED, session_room(session.project_id, session.feature_id), {
			"session_id": session.id,
			"status": session.status.value,
			"current_stage": session.current_stage,
			"queue_position": session.queue_position,
		})

	def execution_status(self, project_id: str, feature_id: str, status: str, action: str, **extra: Any) -> Event:
		return self.emit(EventName.EXECUTION_STATUS, session_room(project_id, feature_id), {
			"status": status,
			"action": action,
			**extra,
		})

	def step_started(self, project_id: str, feature_id: str, step_id: str) -> Event:
		return self.emit(EventName.STEP_STARTED, session_room(project_id, feature_id), {"step_id": step_id})

	def step_completed(self, project_id: str, feature_id: str, step_id: str, summary: str) -> Event:
		return self.emit(EventName.STEP_COMPLETED, session_room(project_id, feature_id), {
			"step_id": step_id,
			"summary": summary,
		})

	def implementation_progress(self, project_id: str, feature_id: str, progress: dict[str, Any]) -> Event:
		return self.emit(EventName.IMPLEMENTATION_PROGRESS, session_room(project_id, feature_id), progress)

	def plan_updated(self, project_id: str, feature_id: str, plan: dict[str, Any]) -> Event:
		return self.emit(EventName.PLAN_UPDATED, session_room(project_id, feature_id), {"plan": plan})

	def queue_reordered(self, project_id: str, queued_sessions: list) -> Event:
		return self.emit(EventName.QUEUE_REORDERED, project_id, {
			"queued_sessions": [
				{"feature_id": s.feature_id, "queue_position": s.queue_position}
				for s in queued_sessions
			],
		})
