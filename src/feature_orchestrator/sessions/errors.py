"""Typed lifecycle errors. All are raised before any state is mutated."""


class LifecycleError(Exception):
	"""Base exception for session lifecycle failures."""
	code = "lifecycle_error"


class SessionNotFoundError(LifecycleError):
	"""Raised when no session exists for a project/feature pair."""
	code = "session_not_found"


class SessionExistsError(LifecycleError):
	"""Raised when creating a session whose feature id is already taken."""
	code = "session_exists"


class InvalidTransitionError(LifecycleError):
	"""Raised when an action is not allowed from the session's current status or stage."""
	code = "invalid_transition"


class PreconditionError(LifecycleError):
	"""Raised when a transition's precondition (approved plan, feedback, ...) is unmet."""
	code = "precondition_failed"


class VersionConflictError(LifecycleError):
	"""Raised when an edit was based on a stale data_version."""
	code = "version_conflict"


class SessionNotQueuedError(LifecycleError):
	"""Raised when a queue-only operation targets a session that is not queued."""
	code = "session_not_queued"


class SpawnLockError(LifecycleError):
	"""Raised when the admission lock for a session is already held."""
	code = "spawn_lock_held"
