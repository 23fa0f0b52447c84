"""Shared fixtures for dripline tests."""

import asyncio

import pytest

import dripline.persistence as persistence
from dripline import AutomationEngine, set_engine
from dripline.collaborators import (
    InMemoryEnrollmentStore,
    InMemorySubscriberStore,
    RecordingEmailSender,
)
from dripline.config import DriplineConfig, EngineConfig, RetryConfig
from dripline.contracts import Step, StepType, Trigger, TriggerType, Workflow
from dripline.persistence import InMemoryWorkflowRepository


class FakeClock:
    """Stand-in for ``asyncio.sleep`` that records requested durations.

    When ``gate`` is set, every sleep blocks until the gate opens.
    """

    def __init__(self) -> None:
        self.sleeps = []
        self.gate = None
        self.on_sleep = None

    @property
    def total(self) -> float:
        return sum(self.sleeps)

    async def __call__(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if self.on_sleep is not None:
            self.on_sleep(seconds)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def _reset_singletons():
    persistence._repository_instance = None
    set_engine(None)
    yield
    persistence._repository_instance = None
    set_engine(None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def mailer():
    return RecordingEmailSender()


@pytest.fixture
def subscribers():
    store = InMemorySubscriberStore()
    store.add_subscriber("s@x.com")
    return store


@pytest.fixture
def enrollments():
    return InMemoryEnrollmentStore()


@pytest.fixture
def config():
    return DriplineConfig(
        engine=EngineConfig(
            heartbeat_interval=3600,
            stale_after=900,
            retry=RetryConfig(max_attempts=3, backoff_jitter=0),
        )
    )


@pytest.fixture
def engine(repo, mailer, subscribers, enrollments, config, clock):
    return AutomationEngine(
        repository=repo,
        email_sender=mailer,
        subscribers=subscribers,
        enrollments=enrollments,
        config=config,
        sleep=clock,
    )


@pytest.fixture
def welcome_workflow():
    """Build the tag / wait one day / welcome email workflow."""

    def _build(tag="new-enrollee", **overrides):
        tag_config = {"tag": tag} if tag is not None else {}
        fields = dict(
            name="Welcome sequence",
            user_id="creator-1",
            trigger=Trigger(trigger_type=TriggerType.NEW_COURSE_ENROLLMENT),
            steps=[
                Step(type=StepType.ADD_TAG, order=1, config=tag_config),
                Step(type=StepType.WAIT, order=2, delay_amount=1, delay_unit="DAYS"),
                Step(
                    type=StepType.SEND_EMAIL,
                    order=3,
                    config={"subject": "Welcome", "body": "Glad you joined!"},
                ),
            ],
        )
        fields.update(overrides)
        return Workflow(**fields)

    return _build
