"""Per-subject single-flight lock for rollouts."""

import builtins
import threading
from datetime import datetime, timezone

from ...exceptions import AlreadyInProgressError
from ...logger import get_logger

logger = get_logger(__name__)


class LockHandle:
    """Handle for a held subject lock. Release is idempotent."""

    def __init__(self, subject: str, owner: str, parent: "SingleFlightLock"):
        self.subject = subject
        self.owner = owner
        self.acquired_at = datetime.now(timezone.utc)
        self._parent = parent
        self._is_held = True

    @property
    def is_held(self) -> bool:
        return self._is_held

    def release(self) -> None:
        """Release the lock; later calls are no-ops."""
        if self._is_held:
            self._parent._release(self)
            self._is_held = False

    async def __aenter__(self) -> "LockHandle":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"LockHandle(subject={self.subject!r}, owner={self.owner!r}, held={self._is_held})"


class SingleFlightLock:
    """At most one holder per subject; acquisition never waits.

    Share one instance between coordinators to enforce single-flight across
    all of them in the process.
    """

    def __init__(self):
        self._holders: builtins.dict[str, LockHandle] = {}
        self._mutex = threading.Lock()

    def try_acquire(self, subject: str, owner: str) -> LockHandle | None:
        """Acquire the subject's lock, or return None if it is held."""
        with self._mutex:
            if subject in self._holders:
                return None
            handle = LockHandle(subject, owner, self)
            self._holders[subject] = handle

        logger.debug("Subject lock acquired", lock_subject=subject, owner=owner)
        return handle

    def acquire(self, subject: str, owner: str) -> LockHandle:
        """Acquire the subject's lock or fail fast with AlreadyInProgressError."""
        handle = self.try_acquire(subject, owner)
        if handle is None:
            raise AlreadyInProgressError(subject, self.holder(subject))
        return handle

    def holder(self, subject: str) -> str | None:
        """Owner currently holding the subject's lock."""
        with self._mutex:
            handle = self._holders.get(subject)
        return handle.owner if handle else None

    def is_locked(self, subject: str) -> bool:
        with self._mutex:
            return subject in self._holders

    def held_subjects(self) -> builtins.list[str]:
        with self._mutex:
            return sorted(self._holders)

    def _release(self, handle: LockHandle) -> None:
        with self._mutex:
            # a stale handle never frees a lock someone else holds
            if self._holders.get(handle.subject) is handle:
                del self._holders[handle.subject]
        logger.debug("Subject lock released", lock_subject=handle.subject, owner=handle.owner)
