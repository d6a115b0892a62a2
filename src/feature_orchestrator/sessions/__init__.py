"""Sessions module - Feature session lifecycle, queue and admission lock."""

from .errors import (
	InvalidTransitionError,
	LifecycleError,
	PreconditionError,
	SessionExistsError,
	SessionNotFoundError,
	SessionNotQueuedError,
	SpawnLockError,
	VersionConflictError,
)
from .lock import SpawnLockRegistry
from .manager import BackoutResult, ResumeResult, SessionManager, get_session_manager
from .models import (
	BackoutAction,
	BackoutReason,
	CreateSessionInput,
	FinalApprovalAction,
	Session,
	SessionStatus,
)

__all__ = [
	"SessionManager",
	"get_session_manager",
	"BackoutResult",
	"ResumeResult",
	"SpawnLockRegistry",
	"Session",
	"SessionStatus",
	"CreateSessionInput",
	"BackoutAction",
	"BackoutReason",
	"FinalApprovalAction",
	"LifecycleError",
	"SessionNotFoundError",
	"SessionExistsError",
	"InvalidTransitionError",
	"PreconditionError",
	"VersionConflictError",
	"SessionNotQueuedError",
	"SpawnLockError",
]
