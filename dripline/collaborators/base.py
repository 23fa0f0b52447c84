"""Interfaces for the external systems the engine calls."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..constants import ENROLLMENT_SOURCE
from ..contracts import new_id, utcnow


class Enrollment(BaseModel):
    """A course enrollment keyed by (course_id, email)."""

    id: str = Field(default_factory=new_id)
    course_id: str
    email: str
    name: Optional[str] = None
    enrollment_source: str = ENROLLMENT_SOURCE
    created_at: datetime = Field(default_factory=utcnow)


class EmailSender(metaclass=abc.ABCMeta):
    """Delivers email on behalf of workflow steps."""

    @abc.abstractmethod
    async def send_email(self, to: str, subject: str, body: str) -> None:
        """Send one message.

        Raises:
            TransientCollaboratorError: when delivery may succeed on retry.
            CollaboratorError: when the provider rejected the message.
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Release provider resources (no-op by default)."""
        pass


class SubscriberStore(metaclass=abc.ABCMeta):
    """Holds subscribers and their tag sets."""

    @abc.abstractmethod
    async def add_tag(self, email: str, tag: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def remove_tag(self, email: str, tag: str) -> None:
        """Remove ``tag``; a no-op when the subscriber lacks it."""
        raise NotImplementedError


class EnrollmentStore(metaclass=abc.ABCMeta):
    """Holds course enrollments."""

    @abc.abstractmethod
    async def upsert_enrollment(
        self,
        course_id: str,
        email: str,
        name: Optional[str] = None,
        source: str = ENROLLMENT_SOURCE,
    ) -> Enrollment:
        """Return the enrollment for (course_id, email), creating it if absent."""
        raise NotImplementedError
