"""
Admission Lock - At most one assistant invocation in flight per session.

An in-memory registry keyed by (project_id, feature_id). Acquisition never
waits: it succeeds or fails immediately. Entries older than the timeout are
treated as abandoned and cleared on the next inspection.
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from .errors import SpawnLockError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 10 * 60

T = TypeVar("T")


@dataclass
class LockEntry:
	"""A held lock."""
	stage: int
	acquired_at: float
	token: int


@dataclass
class LockStatus:
	"""Snapshot of a lock for reporting."""
	locked: bool
	stage: Optional[int] = None
	acquired_at: Optional[float] = None
	elapsed: Optional[float] = None


def lock_key(project_id: str, feature_id: str) -> str:
	return f"{project_id}/{feature_id}"


class SpawnLockRegistry:
	"""
	Keyed admission locks.

	Owned by the session manager; create one per manager (or per test) so
	lock state never leaks between instances.
	"""

	def __init__(
		self,
		timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
		clock: Callable[[], float] = time.monotonic,
	):
		self.timeout_seconds = timeout_seconds
		self._clock = clock
		self._locks: dict[str, LockEntry] = {}
		self._next_token = 0

	def _expired(self, entry: LockEntry) -> bool:
		return self._clock() - entry.acquired_at >= self.timeout_seconds

	def _live_entry(self, key: str) -> Optional[LockEntry]:
		entry = self._locks.get(key)
		if entry is None:
			return None
		if self._expired(entry):
			logger.warning(f"Auto-releasing expired lock for {key} (held for stage {entry.stage})")
			del self._locks[key]
			return None
		return entry

	def _acquire(self, project_id: str, feature_id: str, stage: int) -> Optional[int]:
		key = lock_key(project_id, feature_id)
		existing = self._live_entry(key)
		if existing is not None:
			logger.info(f"Lock already held for {key} (stage {existing.stage}), cannot acquire for stage {stage}")
			return None
		self._next_token += 1
		self._locks[key] = LockEntry(stage=stage, acquired_at=self._clock(), token=self._next_token)
		logger.debug(f"Lock acquired for {key} (stage {stage})")
		return self._next_token

	def acquire(self, project_id: str, feature_id: str, stage: int) -> bool:
		"""Try to take the lock. Returns False immediately if it is held."""
		return self._acquire(project_id, feature_id, stage) is not None

	def release(self, project_id: str, feature_id: str, token: Optional[int] = None) -> None:
		"""Release the lock. No-op if it is not held.

		With a token, only the acquisition that produced it is released.
		"""
		key = lock_key(project_id, feature_id)
		entry = self._locks.get(key)
		if entry is None:
			return
		if token is not None and entry.token != token:
			logger.debug(f"Lock for {key} was re-acquired by another holder; not releasing")
			return
		del self._locks[key]
		logger.debug(f"Lock released for {key} (was stage {entry.stage})")

	def is_locked(self, project_id: str, feature_id: str) -> bool:
		return self._live_entry(lock_key(project_id, feature_id)) is not None

	def get_lock_status(self, project_id: str, feature_id: str) -> Optional[LockStatus]:
		"""Status of a lock, or None if no entry exists."""
		key = lock_key(project_id, feature_id)
		if key not in self._locks:
			return None
		entry = self._live_entry(key)
		if entry is None:
			return LockStatus(locked=False)
		return LockStatus(
			locked=True,
			stage=entry.stage,
			acquired_at=entry.acquired_at,
			elapsed=self._clock() - entry.acquired_at,
		)

	def cleanup_expired(self) -> int:
		"""Drop expired entries. Returns how many were removed."""
		expired = [key for key, entry in self._locks.items() if self._expired(entry)]
		for key in expired:
			logger.warning(f"Auto-releasing expired lock for {key}")
			del self._locks[key]
		return len(expired)

	def active_lock_count(self) -> int:
		self.cleanup_expired()
		return len(self._locks)

	def release_all(self) -> None:
		if self._locks:
			logger.info(f"Force releasing all {len(self._locks)} locks")
		self._locks.clear()

	@asynccontextmanager
	async def hold(self, project_id: str, feature_id: str, stage: int) -> AsyncIterator[None]:
		"""Hold the lock for the duration of the block.

		Raises:
			SpawnLockError: If the lock is already held
		"""
		token = self._acquire(project_id, feature_id, stage)
		if token is None:
			raise SpawnLockError(
				f"Cannot acquire spawn lock for {lock_key(project_id, feature_id)} - another spawn is in progress"
			)
		try:
			yield
		finally:
			self.release(project_id, feature_id, token)

	async def with_lock(
		self,
		project_id: str,
		feature_id: str,
		stage: int,
		fn: Callable[[], Awaitable[T]],
	) -> T:
		"""Run fn while holding the lock; the lock is released on every exit path."""
		async with self.hold(project_id, feature_id, stage):
			return await fn()
