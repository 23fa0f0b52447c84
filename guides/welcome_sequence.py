"""Example: tag new course enrollees, wait, then send a welcome email."""

import asyncio
import logging

from dripline import AutomationEngine, Step, StepType, Trigger, TriggerType, Workflow
from dripline.collaborators import (
    InMemoryEnrollmentStore,
    InMemorySubscriberStore,
    LoggingEmailSender,
)
from dripline.persistence import InMemoryWorkflowRepository


async def fast_sleep(seconds: float) -> None:
    # compress each hour of delay into a tenth of a second for the demo
    await asyncio.sleep(seconds / 36000)


async def main():
    logging.basicConfig(level=logging.INFO)

    repo = InMemoryWorkflowRepository()
    subscribers = InMemorySubscriberStore()
    subscribers.add_subscriber("student@example.com")

    engine = AutomationEngine(
        repository=repo,
        email_sender=LoggingEmailSender(),
        subscribers=subscribers,
        enrollments=InMemoryEnrollmentStore(),
        sleep=fast_sleep,
    )

    workflow = Workflow(
        name="Course welcome",
        trigger=Trigger(
            trigger_type=TriggerType.NEW_COURSE_ENROLLMENT,
            filters={"courseId": "python-101"},
        ),
        steps=[
            Step(type=StepType.ADD_TAG, order=1, config={"tag": "python-101"}),
            Step(
                type=StepType.SEND_EMAIL,
                order=2,
                delay_amount=1,
                delay_unit="HOURS",
                config={"subject": "Welcome!", "body": "Lesson one is waiting."},
            ),
        ],
    )
    await repo.save_workflow(workflow)

    await engine.trigger_workflows(
        TriggerType.NEW_COURSE_ENROLLMENT,
        {"email": "student@example.com", "courseId": "python-101"},
    )
    await engine.drain()

    stats = await engine.get_analytics(workflow.id)
    print(f"✅ Runs: {stats.total_runs}, success rate {stats.success_rate:.0f}%")
    print(f"🏷️  Tags: {subscribers.get_tags('student@example.com')}")

    await engine.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
