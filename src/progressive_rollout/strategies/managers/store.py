"""Rollout persistence boundary and an in-memory implementation."""

import builtins
import copy
from abc import ABC, abstractmethod

from ..enums import RolloutStatus
from ..models import Rollout


class RolloutStore(ABC):
    """Stores rollout aggregates keyed by id, indexed by active subject."""

    @abstractmethod
    async def save(self, rollout: Rollout) -> None:
        """Insert or replace the record for ``rollout``."""

    @abstractmethod
    async def get(self, rollout_id: str) -> Rollout | None:
        """Load one rollout."""

    @abstractmethod
    async def find_active(self, subject: str) -> Rollout | None:
        """Load the non-terminal rollout for ``subject``, if any."""

    @abstractmethod
    async def list(self, status: RolloutStatus | None = None) -> builtins.list[Rollout]:
        """Load rollouts, optionally filtered by status."""

    async def list_unfinished(self) -> builtins.list[Rollout]:
        """Rollouts that a restarted coordinator has to pick up."""
        return [r for r in await self.list() if not r.is_terminal]


class InMemoryRolloutStore(RolloutStore):
    """Process-local store; records are copied in and out like a real store."""

    def __init__(self):
        self._records: builtins.dict[str, Rollout] = {}
        self._active_by_subject: builtins.dict[str, str] = {}

    async def save(self, rollout: Rollout) -> None:
        self._records[rollout.rollout_id] = copy.deepcopy(rollout)

        if rollout.is_terminal:
            if self._active_by_subject.get(rollout.subject) == rollout.rollout_id:
                del self._active_by_subject[rollout.subject]
        else:
            self._active_by_subject[rollout.subject] = rollout.rollout_id

    async def get(self, rollout_id: str) -> Rollout | None:
        record = self._records.get(rollout_id)
        return copy.deepcopy(record) if record else None

    async def find_active(self, subject: str) -> Rollout | None:
        rollout_id = self._active_by_subject.get(subject)
        return await self.get(rollout_id) if rollout_id else None

    async def list(self, status: RolloutStatus | None = None) -> builtins.list[Rollout]:
        return [
            copy.deepcopy(r)
            for r in sorted(self._records.values(), key=lambda r: r.created_at)
            if status is None or r.status == status
        ]
