"""
Mock capability for testing without external services.

Returns (or raises) predefined outcomes in sequence.
"""

import threading
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Union

from archflow.domain.interfaces import CapabilityInterface
from archflow.domain.models import Job

Outcome = Union[Mapping[str, Any], Exception, Callable[[Job], Mapping[str, Any]]]


class MockCapability(CapabilityInterface):
    """Plays back scripted outcomes.

    Each outcome is a result mapping (returned), an exception instance
    (raised) or a callable taking the job and returning a result.
    """

    def __init__(
        self,
        responses: Sequence[Outcome],
        cycle: bool = False,
        cancellable: bool = False,
    ):
        """
        Args:
            responses: Outcomes to play back in order
            cycle: Start over instead of failing once responses run out
            cancellable: Whether cancel() reports success
        """
        self._responses = list(responses)
        self._cycle = cycle
        self._cancellable = cancellable
        self._call_count = 0
        self._lock = threading.Lock()
        self.invoked: list[str] = []
        self.cancelled: list[str] = []

    @property
    def supports_cancel(self) -> bool:
        return self._cancellable

    def invoke(self, job: Job) -> Mapping[str, Any]:
        """Return or raise the next predefined outcome."""
        with self._lock:
            if self._call_count >= len(self._responses):
                if not self._cycle or not self._responses:
                    raise RuntimeError("MockCapability exhausted responses")
                self._call_count = 0
            outcome = self._responses[self._call_count]
            self._call_count += 1
            self.invoked.append(job.job_id)

        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(job)
        return outcome

    def cancel(self, job_id: str) -> bool:
        self.cancelled.append(job_id)
        return self._cancellable

    @property
    def call_count(self) -> int:
        """Number of times invoke() has been called."""
        return len(self.invoked)

    def reset(self) -> None:
        """Reset the playback position to reuse responses."""
        with self._lock:
            self._call_count = 0
            self.invoked.clear()
