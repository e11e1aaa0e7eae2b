"""
Admission control for face processing jobs.

Verification is user-facing and latency-sensitive, so jobs over capacity are
rejected immediately instead of queued.
"""
import logging
import threading
from contextlib import contextmanager

from face_attendance.config import MAX_CONCURRENT_FACE_TASKS
from face_attendance.exceptions import CapacityError

logger = logging.getLogger(__name__)


class AdmissionTicket:
    """One admitted job. Releasing it more than once has no effect."""

    def __init__(self, controller: "AdmissionController"):
        self._controller = controller
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._controller._release_slot()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


class AdmissionController:
    """Bounds the number of in-flight jobs."""

    def __init__(self, max_concurrent: int = MAX_CONCURRENT_FACE_TASKS):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def available(self) -> int:
        with self._lock:
            return self.max_concurrent - self._in_flight

    def acquire(self) -> AdmissionTicket:
        """
        Take a slot or fail immediately.

        Raises:
            CapacityError: If max_concurrent jobs are already in flight
        """
        with self._lock:
            if self._in_flight >= self.max_concurrent:
                logger.warning(f"Admission rejected: {self._in_flight}/{self.max_concurrent} jobs in flight")
                raise CapacityError(
                    "Server is currently busy with face processing tasks. Please try again in a moment."
                )
            self._in_flight += 1
        return AdmissionTicket(self)

    def _release_slot(self) -> None:
        with self._lock:
            self._in_flight = max(0, self._in_flight - 1)

    @contextmanager
    def admit(self):
        """Context manager that acquires a ticket and always releases it."""
        ticket = self.acquire()
        try:
            yield ticket
        finally:
            ticket.release()
