"""In-process collaborators for tests, dry runs and local development."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from ..constants import ENROLLMENT_SOURCE
from .base import EmailSender, Enrollment, EnrollmentStore, SubscriberStore

logger = logging.getLogger(__name__)


class SentEmail(BaseModel):
    to: str
    subject: str
    body: str


class RecordingEmailSender(EmailSender):
    """Keeps every message in ``sent`` instead of delivering it."""

    def __init__(self) -> None:
        self.sent: List[SentEmail] = []

    async def send_email(self, to: str, subject: str, body: str) -> None:
        self.sent.append(SentEmail(to=to, subject=subject, body=body))


class LoggingEmailSender(EmailSender):
    """Writes messages to the log. Used when no provider is configured."""

    async def send_email(self, to: str, subject: str, body: str) -> None:
        logger.info(f"Sending email to {to}: subject={subject!r}")
        logger.debug(f"Email body for {to}: {body}")


class InMemorySubscriberStore(SubscriberStore):
    """Subscribers and tags held in a dict.

    Tag changes only apply to known subscribers; unknown emails are ignored.
    """

    def __init__(self) -> None:
        self._tags: Dict[str, List[str]] = {}

    def add_subscriber(self, email: str, tags: Optional[List[str]] = None) -> None:
        self._tags.setdefault(email, [])
        for tag in tags or []:
            if tag not in self._tags[email]:
                self._tags[email].append(tag)

    def get_tags(self, email: str) -> List[str]:
        return list(self._tags.get(email, []))

    async def add_tag(self, email: str, tag: str) -> None:
        tags = self._tags.get(email)
        if tags is None:
            logger.debug(f"No subscriber {email}; tag {tag} not added")
            return
        if tag not in tags:
            tags.append(tag)

    async def remove_tag(self, email: str, tag: str) -> None:
        tags = self._tags.get(email)
        if tags is None:
            return
        self._tags[email] = [t for t in tags if t != tag]


class InMemoryEnrollmentStore(EnrollmentStore):
    """Enrollments held in a dict keyed by (course_id, email)."""

    def __init__(self) -> None:
        self._enrollments: Dict[Tuple[str, str], Enrollment] = {}

    @property
    def enrollments(self) -> List[Enrollment]:
        return list(self._enrollments.values())

    async def upsert_enrollment(
        self,
        course_id: str,
        email: str,
        name: Optional[str] = None,
        source: str = ENROLLMENT_SOURCE,
    ) -> Enrollment:
        key = (course_id, email)
        existing = self._enrollments.get(key)
        if existing is not None:
            return existing
        enrollment = Enrollment(
            course_id=course_id, email=email, name=name, enrollment_source=source
        )
        self._enrollments[key] = enrollment
        return enrollment
