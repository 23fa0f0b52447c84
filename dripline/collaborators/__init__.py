"""Collaborator factory and interfaces."""

from __future__ import annotations

from typing import NamedTuple, Optional

from ..config import DriplineConfig, load_config
from .base import EmailSender, Enrollment, EnrollmentStore, SubscriberStore
from .inmemory import (
    InMemoryEnrollmentStore,
    InMemorySubscriberStore,
    LoggingEmailSender,
    RecordingEmailSender,
    SentEmail,
)


class Collaborators(NamedTuple):
    email_sender: EmailSender
    subscribers: SubscriberStore
    enrollments: EnrollmentStore


def get_email_sender(
    backend: Optional[str] = None, config: Optional[DriplineConfig] = None
) -> EmailSender:
    """Factory function to get the configured email sender."""

    config = config or load_config()
    backend = (backend or config.email.backend).lower()

    if backend == "log":
        return LoggingEmailSender()
    elif backend == "http":
        from .http import HttpEmailSender

        if not config.email.endpoint:
            raise ValueError("email.endpoint is required for the http email backend")
        return HttpEmailSender(
            endpoint=config.email.endpoint,
            api_key=config.email.api_key,
            sender=config.email.sender,
            timeout=config.email.timeout,
        )
    else:
        raise ValueError(f"Unsupported email backend: {backend}")


def get_collaborators(config: Optional[DriplineConfig] = None) -> Collaborators:
    """Build the default collaborator set.

    Subscriber and enrollment stores are in-process; a host platform passes
    its own stores to ``AutomationEngine`` instead.
    """
    return Collaborators(
        email_sender=get_email_sender(config=config),
        subscribers=InMemorySubscriberStore(),
        enrollments=InMemoryEnrollmentStore(),
    )


__all__ = [
    "Collaborators",
    "EmailSender",
    "Enrollment",
    "EnrollmentStore",
    "SubscriberStore",
    "InMemoryEnrollmentStore",
    "InMemorySubscriberStore",
    "LoggingEmailSender",
    "RecordingEmailSender",
    "SentEmail",
    "get_collaborators",
    "get_email_sender",
]
