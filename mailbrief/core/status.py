"""
In-process run registry: at most one in-flight run per user.
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from loguru import logger

from mailbrief.exceptions import AlreadyProcessing
from mailbrief.models import ProcessingStage, RunStatus, StatusSnapshot


class ProcessingStatusTracker:
    """
    Single-flight gate keyed by user id.
    State lives in this process only and is lost on restart.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: dict[str, RunStatus] = {}

    def begin(self, user_id: str) -> tuple[RunStatus, bool]:
        """
        Register a run unless one is already in flight.

        Returns:
            (status, admitted). When not admitted, the existing status is returned unchanged.
        """
        with self._lock:
            existing = self._runs.get(user_id)
            if existing is not None:
                return existing.model_copy(), False
            status = RunStatus(user_id=user_id)
            self._runs[user_id] = status
            return status.model_copy(), True

    def advance(self, user_id: str, stage: ProcessingStage) -> None:
        with self._lock:
            status = self._runs.get(user_id)
            if status is None:
                logger.warning(f"Stage {stage.value} reported for user {user_id} without an active run")
                return
            status.stage = stage
        logger.debug(f"User {user_id} -> {stage.value}")

    def end(self, user_id: str) -> None:
        """Release the user's entry. Ending a user without a run is a no-op."""
        with self._lock:
            self._runs.pop(user_id, None)

    def query(self, user_id: str, now: Optional[datetime] = None) -> StatusSnapshot:
        with self._lock:
            status = self._runs.get(user_id)
            if status is None:
                return StatusSnapshot(state="idle")
            stage, started_at = status.stage, status.started_at

        elapsed = (now or datetime.now()) - started_at
        return StatusSnapshot(
            state="processing",
            stage=stage,
            started_at=started_at,
            elapsed_ms=max(0, int(elapsed.total_seconds() * 1000)),
        )

    def active_users(self) -> list[str]:
        with self._lock:
            return list(self._runs)

    @contextmanager
    def track(self, user_id: str) -> Iterator[RunStatus]:
        """
        Hold the user's run slot for the duration of the block.

        Raises:
            AlreadyProcessing: If another run for the user is in flight.
        """
        status, admitted = self.begin(user_id)
        if not admitted:
            raise AlreadyProcessing(user_id)
        try:
            yield status
        finally:
            self.end(user_id)
