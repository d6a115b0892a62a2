"""
Transition table for the session lifecycle.

Maps (current status, action) to the resulting status and stage, the
preconditions that must hold, and the side effects the manager applies.
Pairs missing from the table are illegal transitions.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .models import ACTIVE_STATUSES, FINAL_STAGE, SessionStatus


class LifecycleAction(str, Enum):
	"""Operations that move a session between states."""
	TRANSITION = "transition"
	MERGE = "merge"
	PLAN_CHANGES = "plan_changes"
	RE_REVIEW = "re_review"
	PAUSE = "pause"
	ABANDON = "abandon"
	RESUME = "resume"
	PROMOTE = "promote"


class Precondition(str, Enum):
	PLAN_APPROVED = "plan_approved"
	PR_CREATED = "pr_created"
	FEEDBACK_REQUIRED = "feedback_required"


class SideEffect(str, Enum):
	LEAVE_QUEUE = "leave_queue"
	PROMOTE_NEXT = "promote_next"
	RECORD_BACKOUT = "record_backout"
	CLEAR_BACKOUT = "clear_backout"
	ACTIVATE_OR_REQUEUE = "activate_or_requeue"
	RECORD_FEEDBACK = "record_feedback"
	RESET_PLAN_TRACKING = "reset_plan_tracking"


@dataclass(frozen=True)
class Transition:
	"""
	Outcome of a legal (status, action) pair.

	target_status None means "the status of the target stage";
	target_stage None means "keep the current stage" (or, for manual
	transitions, the stage the caller asked for).
	"""
	target_status: Optional[SessionStatus] = None
	target_stage: Optional[int] = None
	preconditions: tuple[Precondition, ...] = ()
	side_effects: tuple[SideEffect, ...] = ()


# Preconditions for entering a stage through a manual transition
STAGE_ENTRY_PRECONDITIONS: dict[int, tuple[Precondition, ...]] = {
	3: (Precondition.PLAN_APPROVED,),
	5: (Precondition.PR_CREATED,),
}

MANUAL_TARGET_STAGES = frozenset(range(1, FINAL_STAGE + 1))

# A manual move into the final stage completes the session and frees the active slot
MANUAL_COMPLETION = Transition(
	target_status=SessionStatus.COMPLETED,
	target_stage=FINAL_STAGE,
	side_effects=(SideEffect.PROMOTE_NEXT,),
)


def _build_table() -> dict[tuple[SessionStatus, LifecycleAction], Transition]:
	table: dict[tuple[SessionStatus, LifecycleAction], Transition] = {}

	for status in ACTIVE_STATUSES:
		table[(status, LifecycleAction.TRANSITION)] = Transition()

	table[(SessionStatus.FINAL_APPROVAL, LifecycleAction.MERGE)] = Transition(
		target_status=SessionStatus.COMPLETED,
		target_stage=FINAL_STAGE,
		side_effects=(SideEffect.PROMOTE_NEXT,),
	)
	table[(SessionStatus.FINAL_APPROVAL, LifecycleAction.PLAN_CHANGES)] = Transition(
		target_status=SessionStatus.PLANNING,
		target_stage=2,
		preconditions=(Precondition.FEEDBACK_REQUIRED,),
		side_effects=(SideEffect.RECORD_FEEDBACK, SideEffect.RESET_PLAN_TRACKING),
	)
	table[(SessionStatus.FINAL_APPROVAL, LifecycleAction.RE_REVIEW)] = Transition(
		target_status=SessionStatus.PR_REVIEW,
		target_stage=5,
		preconditions=(Precondition.FEEDBACK_REQUIRED,),
		side_effects=(SideEffect.RECORD_FEEDBACK,),
	)

	for status in ACTIVE_STATUSES | {SessionStatus.QUEUED}:
		table[(status, LifecycleAction.PAUSE)] = Transition(
			target_status=SessionStatus.PAUSED,
			side_effects=(SideEffect.RECORD_BACKOUT, SideEffect.LEAVE_QUEUE, SideEffect.PROMOTE_NEXT),
		)
		table[(status, LifecycleAction.ABANDON)] = Transition(
			target_status=SessionStatus.FAILED,
			side_effects=(SideEffect.RECORD_BACKOUT, SideEffect.LEAVE_QUEUE, SideEffect.PROMOTE_NEXT),
		)

	table[(SessionStatus.PAUSED, LifecycleAction.RESUME)] = Transition(
		side_effects=(SideEffect.CLEAR_BACKOUT, SideEffect.ACTIVATE_OR_REQUEUE),
	)
	table[(SessionStatus.QUEUED, LifecycleAction.PROMOTE)] = Transition(
		side_effects=(SideEffect.LEAVE_QUEUE,),
	)
	return table


TRANSITIONS = _build_table()


def lookup(status: SessionStatus, action: LifecycleAction) -> Optional[Transition]:
	"""The transition for (status, action), or None if it is not allowed."""
	return TRANSITIONS.get((status, action))


def allowed_actions(status: SessionStatus) -> list[LifecycleAction]:
	return [action for (s, action) in TRANSITIONS if s == status]


def manual_transition(status: SessionStatus, target_stage: int) -> Optional[Transition]:
	"""The transition for manually moving a session in status to target_stage."""
	if lookup(status, LifecycleAction.TRANSITION) is None or target_stage not in MANUAL_TARGET_STAGES:
		return None
	if target_stage == FINAL_STAGE:
		return MANUAL_COMPLETION
	return TRANSITIONS[(status, LifecycleAction.TRANSITION)]
