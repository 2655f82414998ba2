"""
Enrollment number allocation for student profiles.

Format: `STU<YYYY><MM><NNNN>`, e.g. `STU2025030042`.

Two allocators share the format:

- `CountingEnrollmentAllocator` derives the sequence from the number of
  student profiles at call time. It is not atomic: two registrations in the
  same period can read the same count and build the same code. It stays
  selectable (`EDUBLOOM_ENROLLMENT_ALLOCATOR=count`) so the race can be
  reproduced; the unique index on `enrollment_no` catches the collision.
- `SequenceEnrollmentAllocator` asks the store for the next value of a
  per-period counter that is incremented atomically (default).
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol
import logging
import re
import time

from .config import ALLOCATOR_COUNT, AdmissionsConfig
from .models import utcnow
from .ports import AdmissionsRepoProtocol

logger = logging.getLogger("edubloom.admissions.enrollment")

ENROLLMENT_RE = re.compile(r"^STU\d{4}(0[1-9]|1[0-2])\d{4,}$")


class EnrollmentAllocatorProtocol(Protocol):
    async def allocate(self, role: str) -> Optional[str]:
        ...


def format_enrollment_no(at: datetime, sequence: int) -> str:
    return f"STU{at:%Y}{at:%m}{sequence:04d}"


class CountingEnrollmentAllocator:
    def __init__(
        self,
        repo: AdmissionsRepoProtocol,
        *,
        clock: Callable[[], datetime] = utcnow,
        millis: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self._repo = repo
        self._clock = clock
        self._millis = millis

    async def allocate(self, role: str) -> Optional[str]:
        if role != "student":
            return None
        now = self._clock()
        try:
            count = await self._repo.count_student_profiles()
        except (ConnectionError, PermissionError) as exc:
            # Forward progress over density: last four digits of the timestamp.
            logger.warning("Student count unavailable, using timestamp suffix: %s", exc.__class__.__name__)
            return format_enrollment_no(now, self._millis() % 10000)
        return format_enrollment_no(now, count + 1)


class SequenceEnrollmentAllocator:
    def __init__(self, repo: AdmissionsRepoProtocol, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._repo = repo
        self._clock = clock

    async def allocate(self, role: str) -> Optional[str]:
        if role != "student":
            return None
        now = self._clock()
        sequence = await self._repo.next_enrollment_sequence(f"{now:%Y%m}")
        return format_enrollment_no(now, sequence)


def build_allocator(cfg: AdmissionsConfig, repo: AdmissionsRepoProtocol) -> EnrollmentAllocatorProtocol:
    if cfg.allocator == ALLOCATOR_COUNT:
        logger.warning("Using non-atomic counting enrollment allocator")
        return CountingEnrollmentAllocator(repo)
    return SequenceEnrollmentAllocator(repo)


__all__ = [
    "ENROLLMENT_RE",
    "EnrollmentAllocatorProtocol",
    "format_enrollment_no",
    "CountingEnrollmentAllocator",
    "SequenceEnrollmentAllocator",
    "build_allocator",
]
