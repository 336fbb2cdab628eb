#!/usr/bin/env python3

"""
cancellation.py

Cooperative cancellation for backup jobs.

A job pipeline checks its CancelToken at every folder and message boundary.
The InterruptManager tracks the tokens of all running jobs so a signal handler
can stop every job at its next boundary.
"""

from __future__ import annotations

from typing import Dict, Optional

from mailvault.errors import JobCancelledError
from mailvault.logger import get_logger


class CancelToken:
    """Cancellation flag for one job. Single event loop, so no locking."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._cancelled = False
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Backup job cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    def is_cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise JobCancelledError(self.reason or "Backup job cancelled")


class InterruptManager:
    """
    Registry of the cancel tokens of running jobs.

    Owned by a JobManager instance; there is no process-wide singleton.
    """

    def __init__(self):
        self._tokens: Dict[str, CancelToken] = {}
        self._interrupted = False
        self.logger = get_logger(__name__)

    def register(self, job_id: str) -> CancelToken:
        token = CancelToken(job_id)
        if self._interrupted:
            token.cancel("Process is shutting down")
        self._tokens[job_id] = token
        return token

    def unregister(self, job_id: str) -> None:
        self._tokens.pop(job_id, None)

    def get(self, job_id: str) -> Optional[CancelToken]:
        return self._tokens.get(job_id)

    def cancel(self, job_id: str, reason: str = "Backup job cancelled") -> bool:
        token = self._tokens.get(job_id)
        if token is None:
            return False
        self.logger.warning(f"Cancelling job {job_id}: {reason}")
        token.cancel(reason)
        return True

    def interrupt_all(self, reason: str = "Process is shutting down") -> None:
        """Signal every registered job; jobs registered afterwards start cancelled."""
        self.logger.warning(f"Interrupt signaled - cancelling {len(self._tokens)} running job(s)...")
        self._interrupted = True
        for token in list(self._tokens.values()):
            token.cancel(reason)

    def is_interrupted(self) -> bool:
        return self._interrupted

    def active_count(self) -> int:
        return len(self._tokens)

    def reset(self) -> None:
        self._interrupted = False
        self._tokens.clear()
