"""
Job registry: the job map and the active-execution set.

Read-modify-write sequences (state transitions, active-set membership)
must run under ``JobRegistry.lock``. Single reads do not need it.
"""

import asyncio
import logging
from typing import Dict, FrozenSet, Iterator, List, Optional, Set

from postscheduler.scheduling.models import JobRecord, JobState

logger = logging.getLogger(__name__)


class JobRegistry:
    """Owner of every scheduled ``JobRecord`` and of the active set.

    Attributes:
        lock: Guards compound registry updates.
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self._jobs: Dict[str, JobRecord] = {}
        self._active: Set[str] = set()

    # ================================================================
    # JOB MAP
    # ================================================================

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> Iterator[JobRecord]:
        return iter(list(self._jobs.values()))

    def put(self, record: JobRecord) -> Optional[JobRecord]:
        """Register ``record``, returning the record it replaced (if any)."""
        previous = self._jobs.get(record.job_id)
        self._jobs[record.job_id] = record
        if previous is not None:
            logger.info("[SCHEDULER] Replaced existing job %s", record.job_id)
        return previous

    def remove(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.pop(job_id, None)

    def records(self) -> List[JobRecord]:
        return list(self._jobs.values())

    def drain_all(self) -> List[JobRecord]:
        """Remove and return every record."""
        records = list(self._jobs.values())
        self._jobs.clear()
        return records

    def count_by_state(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for record in self._jobs.values():
            counts[record.state.value] += 1
        return counts

    # ================================================================
    # ACTIVE SET
    # ================================================================

    def mark_active(self, job_id: str) -> None:
        self._active.add(job_id)

    def release(self, job_id: str) -> None:
        self._active.discard(job_id)

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    @property
    def active_ids(self) -> FrozenSet[str]:
        return frozenset(self._active)

    @property
    def active_count(self) -> int:
        return len(self._active)


__all__ = ["JobRegistry"]
