"""End-to-end engine behaviour: triggers, executions, counters and recovery."""

import asyncio

import pytest

import dripline.engine as engine_module
from dripline import AutomationEngine, set_engine, trigger_workflow
from dripline.constants import ABANDONED_EXECUTION_ERROR
from dripline.contracts import (
    ExecutionStatus,
    Step,
    StepLogStatus,
    StepType,
    Trigger,
    TriggerType,
    Workflow,
    WorkflowStatus,
)
from dripline.exceptions import WorkflowNotFoundError
from dripline.persistence import SQLiteWorkflowRepository

ENROLLED = {"email": "s@x.com", "courseId": "c1", "name": "Sam"}


def _hello_workflow(trigger=TriggerType.NEW_SUBSCRIBER, filters=None, **overrides):
    fields = dict(
        name="Subscriber hello",
        trigger=Trigger(trigger_type=trigger, filters=filters),
        steps=[
            Step(
                type=StepType.SEND_EMAIL,
                order=1,
                config={"subject": "Hello", "body": "Thanks for subscribing"},
            )
        ],
    )
    fields.update(overrides)
    return Workflow(**fields)


def _condition_workflow(halt_on_false=False):
    return Workflow(
        name="Gmail only",
        trigger=Trigger(trigger_type=TriggerType.NEW_SUBSCRIBER),
        steps=[
            Step(
                type=StepType.CONDITION,
                order=1,
                config={
                    "condition": "email contains '@gmail.com'",
                    "halt_on_false": halt_on_false,
                },
            ),
            Step(
                type=StepType.SEND_EMAIL,
                order=2,
                config={"subject": "Gmail tips", "body": "..."},
            ),
        ],
    )


def _record_step_log_creation(repo):
    orders = []
    create = repo.create_step_log

    async def create_step_log(step_log):
        orders.append(step_log.step_order)
        await create(step_log)

    repo.create_step_log = create_step_log
    return orders


async def _until(predicate, attempts=500):
    for _ in range(attempts):
        if await predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# ----------------------------------------------------------------------
# Happy and failing paths


@pytest.mark.asyncio
async def test_welcome_sequence_runs_to_completion(
    engine, repo, mailer, subscribers, clock, welcome_workflow
):
    wf = welcome_workflow()
    await repo.save_workflow(wf)
    created_orders = _record_step_log_creation(repo)
    seen_at_first_sleep = []
    clock.on_sleep = lambda _: seen_at_first_sleep.append(
        (subscribers.get_tags("s@x.com"), len(mailer.sent))
    )

    await engine.trigger_workflows(TriggerType.NEW_COURSE_ENROLLMENT, ENROLLED)

    # dispatch returns before any step has run
    [ex] = await repo.list_executions(wf.id)
    assert ex.status == ExecutionStatus.RUNNING
    assert ex.subscriber_email == "s@x.com"
    assert ex.trigger_data == ENROLLED
    assert subscribers.get_tags("s@x.com") == []

    await engine.drain()

    assert seen_at_first_sleep[0] == (["new-enrollee"], 0)
    assert created_orders == [1, 2, 3]
    assert clock.total == 86400
    assert [(m.to, m.subject) for m in mailer.sent] == [("s@x.com", "Welcome")]

    ex = await repo.get_execution(ex.id)
    assert ex.status == ExecutionStatus.COMPLETED
    assert ex.completed_at is not None
    logs = await repo.list_step_logs(ex.id)
    assert [log.status for log in logs] == [StepLogStatus.COMPLETED] * 3

    stored = await repo.get_workflow(wf.id)
    assert (stored.total_runs, stored.successful_runs) == (1, 1)
    assert stored.last_run_at is not None


@pytest.mark.asyncio
async def test_misconfigured_step_fails_execution(
    engine, repo, mailer, clock, welcome_workflow
):
    wf = welcome_workflow(tag=None)
    await repo.save_workflow(wf)
    created_orders = _record_step_log_creation(repo)

    await engine.trigger_workflows("NEW_COURSE_ENROLLMENT", ENROLLED)
    await engine.drain()

    [ex] = await repo.list_executions(wf.id)
    assert ex.status == ExecutionStatus.FAILED
    assert "Invalid ADD_TAG configuration" in ex.error
    [log] = await repo.list_step_logs(ex.id)
    assert log.status == StepLogStatus.FAILED
    assert created_orders == [1]
    assert mailer.sent == []
    assert clock.sleeps == []

    stored = await repo.get_workflow(wf.id)
    assert (stored.total_runs, stored.successful_runs) == (1, 0)


@pytest.mark.asyncio
async def test_start_execution_unknown_workflow(engine):
    with pytest.raises(WorkflowNotFoundError):
        await engine.start_execution("missing", {})


# ----------------------------------------------------------------------
# Matching


@pytest.mark.asyncio
async def test_disabled_and_paused_workflows_never_run(engine, repo, mailer):
    await repo.save_workflow(_hello_workflow(enabled=False))
    await repo.save_workflow(_hello_workflow(status=WorkflowStatus.PAUSED))
    await repo.save_workflow(_hello_workflow(status=WorkflowStatus.ARCHIVED))

    await engine.trigger_workflows(TriggerType.NEW_SUBSCRIBER, {"email": "s@x.com"})
    await engine.drain()

    assert await repo.list_executions() == []
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_each_matching_workflow_gets_one_execution(engine, repo, mailer):
    first = _hello_workflow()
    second = _hello_workflow(name="Second hello")
    other = _hello_workflow(trigger=TriggerType.PRODUCT_PURCHASED)
    for wf in (first, second, other):
        await repo.save_workflow(wf)

    await engine.trigger_workflows(TriggerType.NEW_SUBSCRIBER, {"email": "s@x.com"})
    await engine.drain()

    executions = await repo.list_executions()
    assert sorted(ex.workflow_id for ex in executions) == sorted([first.id, second.id])
    assert len(mailer.sent) == 2


@pytest.mark.asyncio
async def test_trigger_filters_select_workflows(engine, repo):
    only_c1 = _hello_workflow(
        trigger=TriggerType.NEW_COURSE_ENROLLMENT, filters={"courseId": "c1"}
    )
    c1_or_c2 = _hello_workflow(
        trigger=TriggerType.NEW_COURSE_ENROLLMENT, filters={"courseId": ["c1", "c2"]}
    )
    await repo.save_workflow(only_c1)
    await repo.save_workflow(c1_or_c2)

    await engine.trigger_workflows("NEW_COURSE_ENROLLMENT", {"email": "s@x.com", "courseId": "c2"})
    await engine.drain()
    assert [ex.workflow_id for ex in await repo.list_executions()] == [c1_or_c2.id]

    await engine.trigger_workflows("NEW_COURSE_ENROLLMENT", {"email": "s@x.com", "courseId": "c3"})
    await engine.drain()
    assert len(await repo.list_executions()) == 1


# ----------------------------------------------------------------------
# Failure isolation


@pytest.mark.asyncio
async def test_malformed_filter_does_not_block_other_workflows(engine, repo):
    broken = _hello_workflow(filters={"courseId": {"greater_than": 3}})
    healthy = _hello_workflow()
    await repo.save_workflow(broken)
    await repo.save_workflow(healthy)

    await engine.trigger_workflows(TriggerType.NEW_SUBSCRIBER, {"email": "s@x.com"})
    await engine.drain()

    assert [ex.workflow_id for ex in await repo.list_executions()] == [healthy.id]


@pytest.mark.asyncio
async def test_start_failure_is_isolated(engine, repo, monkeypatch):
    failing = _hello_workflow(name="Failing")
    healthy = _hello_workflow(name="Healthy")
    await repo.save_workflow(failing)
    await repo.save_workflow(healthy)

    real_start = engine.coordinator.start_execution

    async def start_execution(workflow_id, payload, trigger_type=None):
        if workflow_id == failing.id:
            raise RuntimeError("database unavailable")
        return await real_start(workflow_id, payload, trigger_type=trigger_type)

    monkeypatch.setattr(engine.coordinator, "start_execution", start_execution)

    await engine.trigger_workflows(TriggerType.NEW_SUBSCRIBER, {"email": "s@x.com"})
    await engine.drain()

    assert [ex.workflow_id for ex in await repo.list_executions()] == [healthy.id]


@pytest.mark.asyncio
async def test_lookup_failure_and_unknown_trigger_never_raise(engine, repo, monkeypatch):
    await engine.trigger_workflows("NOT_A_REAL_EVENT", {"email": "s@x.com"})

    async def broken_lookup(trigger_type):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(repo, "find_workflows_for_trigger", broken_lookup)
    await engine.trigger_workflows(TriggerType.NEW_SUBSCRIBER, {"email": "s@x.com"})

    assert await repo.list_executions() == []


@pytest.mark.asyncio
async def test_module_trigger_workflow_never_raises(engine, repo, mailer, monkeypatch):
    await repo.save_workflow(_hello_workflow())
    set_engine(engine)

    await trigger_workflow("NEW_SUBSCRIBER", {"email": "s@x.com"})
    await engine.drain()
    assert len(mailer.sent) == 1

    set_engine(None)

    def broken_engine(*args, **kwargs):
        raise RuntimeError("no configuration")

    monkeypatch.setattr(engine_module, "AutomationEngine", broken_engine)
    assert await trigger_workflow("NEW_SUBSCRIBER", {"email": "s@x.com"}) is None


# ----------------------------------------------------------------------
# Concurrency


@pytest.mark.asyncio
async def test_waiting_execution_does_not_block_others(
    engine, repo, mailer, clock, welcome_workflow
):
    waiting = welcome_workflow()
    quick = _hello_workflow()
    await repo.save_workflow(waiting)
    await repo.save_workflow(quick)
    clock.gate = asyncio.Event()

    await engine.trigger_workflows(TriggerType.NEW_COURSE_ENROLLMENT, ENROLLED)
    await engine.trigger_workflows(TriggerType.NEW_SUBSCRIBER, {"email": "q@x.com"})

    async def quick_done():
        executions = await repo.list_executions(quick.id)
        return bool(executions) and executions[0].status == ExecutionStatus.COMPLETED

    await _until(quick_done)
    [slow] = await repo.list_executions(waiting.id)
    assert slow.status == ExecutionStatus.RUNNING
    assert [m.to for m in mailer.sent] == ["q@x.com"]

    clock.gate.set()
    await engine.drain()
    slow = await repo.get_execution(slow.id)
    assert slow.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["memory", "sqlite"])
async def test_concurrent_runs_update_counters_atomically(
    backend, tmp_path, repo, mailer, subscribers, enrollments, config, clock, welcome_workflow
):
    if backend == "sqlite":
        repo = SQLiteWorkflowRepository(tmp_path / "wf.db")
    engine = AutomationEngine(
        repository=repo,
        email_sender=mailer,
        subscribers=subscribers,
        enrollments=enrollments,
        config=config,
        sleep=clock,
    )
    wf = welcome_workflow()
    await repo.save_workflow(wf)

    for _ in range(5):
        await engine.trigger_workflows(TriggerType.NEW_COURSE_ENROLLMENT, ENROLLED)
    await engine.drain()

    stored = await repo.get_workflow(wf.id)
    assert (stored.total_runs, stored.successful_runs) == (5, 5)
    assert len(mailer.sent) == 5


# ----------------------------------------------------------------------
# Conditions


@pytest.mark.asyncio
async def test_false_condition_continues_by_default(engine, repo, mailer):
    wf = _condition_workflow()
    await repo.save_workflow(wf)

    await engine.trigger_workflows(
        TriggerType.NEW_SUBSCRIBER, {"email": "s@x.com", "condition": "from-event"}
    )
    await engine.drain()

    [ex] = await repo.list_executions(wf.id)
    assert ex.status == ExecutionStatus.COMPLETED
    assert len(mailer.sent) == 1

    cond_log, email_log = await repo.list_step_logs(ex.id)
    assert cond_log.output["conditionMet"] is False
    # step outputs never overwrite event fields
    assert email_log.input["condition"] == "from-event"
    assert email_log.input["conditionMet"] is False


@pytest.mark.asyncio
async def test_false_condition_can_halt(engine, repo, mailer):
    wf = _condition_workflow(halt_on_false=True)
    await repo.save_workflow(wf)

    await engine.trigger_workflows(TriggerType.NEW_SUBSCRIBER, {"email": "s@x.com"})
    await engine.drain()

    [ex] = await repo.list_executions(wf.id)
    assert ex.status == ExecutionStatus.COMPLETED
    assert len(await repo.list_step_logs(ex.id)) == 1
    assert mailer.sent == []

    await engine.trigger_workflows(TriggerType.NEW_SUBSCRIBER, {"email": "g@gmail.com"})
    await engine.drain()
    assert [m.to for m in mailer.sent] == ["g@gmail.com"]


# ----------------------------------------------------------------------
# Dry runs


@pytest.mark.asyncio
async def test_test_execution_has_no_side_effects(
    engine, repo, mailer, subscribers, clock, welcome_workflow
):
    wf = welcome_workflow()
    await repo.save_workflow(wf)

    result = await engine.test_execution(wf.id, {"email": "a@example.com"})

    assert result.success is True
    assert result.status == ExecutionStatus.COMPLETED
    assert (result.steps_executed, result.total_steps) == (3, 3)
    assert result.steps[1].output["delay"]["skipped"] is True
    assert result.steps[2].output["emailDetails"]["to"] == "a@example.com"
    assert mailer.sent == []
    assert clock.sleeps == []
    assert subscribers.get_tags("a@example.com") == []

    ex = await repo.get_execution(result.execution_id)
    assert ex.test_mode is True
    assert ex.status == ExecutionStatus.COMPLETED
    stored = await repo.get_workflow(wf.id)
    assert stored.total_runs == 0
    assert (await engine.get_analytics(wf.id)).total_runs == 0


@pytest.mark.asyncio
async def test_test_execution_reports_failures(engine, repo, welcome_workflow):
    wf = welcome_workflow(tag=None)
    await repo.save_workflow(wf)

    result = await engine.test_execution(wf.id)

    assert result.success is False
    assert result.steps_executed == 1
    assert result.steps[0].status == StepLogStatus.FAILED
    ex = await repo.get_execution(result.execution_id)
    assert ex.error == "One or more steps failed"
    assert ex.subscriber_email == "test@example.com"
    assert (await repo.get_workflow(wf.id)).total_runs == 0

    with pytest.raises(WorkflowNotFoundError):
        await engine.test_execution("missing")


# ----------------------------------------------------------------------
# Shutdown and recovery


@pytest.mark.asyncio
async def test_interrupted_execution_is_reconciled(
    engine, repo, clock, welcome_workflow
):
    wf = welcome_workflow()
    await repo.save_workflow(wf)
    clock.gate = asyncio.Event()

    await engine.trigger_workflows(TriggerType.NEW_COURSE_ENROLLMENT, ENROLLED)

    async def waiting():
        return bool(clock.sleeps)

    await _until(waiting)
    await engine.shutdown()

    [ex] = await repo.list_executions(wf.id)
    assert ex.status == ExecutionStatus.RUNNING
    assert (await repo.get_workflow(wf.id)).total_runs == 0

    assert await engine.reconcile(stale_after=0) == [ex.id]

    ex = await repo.get_execution(ex.id)
    assert ex.status == ExecutionStatus.FAILED
    assert ex.error == ABANDONED_EXECUTION_ERROR
    tag_log, wait_log = await repo.list_step_logs(ex.id)
    assert tag_log.status == StepLogStatus.COMPLETED
    assert wait_log.status == StepLogStatus.FAILED
    stored = await repo.get_workflow(wf.id)
    assert (stored.total_runs, stored.successful_runs) == (1, 0)

    assert await engine.reconcile(stale_after=0) == []


@pytest.mark.asyncio
async def test_reconcile_skips_executions_still_in_flight(
    engine, repo, clock, welcome_workflow
):
    wf = welcome_workflow()
    await repo.save_workflow(wf)
    clock.gate = asyncio.Event()

    await engine.trigger_workflows(TriggerType.NEW_COURSE_ENROLLMENT, ENROLLED)

    async def waiting():
        return bool(clock.sleeps)

    await _until(waiting)
    assert await engine.reconcile(stale_after=0) == []

    clock.gate.set()
    await engine.drain()
    [ex] = await repo.list_executions(wf.id)
    assert ex.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_analytics_success_rate(engine, repo, welcome_workflow):
    wf = welcome_workflow()
    await repo.save_workflow(wf)

    await engine.trigger_workflows(TriggerType.NEW_COURSE_ENROLLMENT, ENROLLED)
    await engine.trigger_workflows(TriggerType.NEW_COURSE_ENROLLMENT, {"courseId": "c1"})
    await engine.drain()

    stats = await engine.get_analytics(wf.id)
    assert stats.total_runs == 2
    assert stats.successful_runs == 1
    assert stats.failed_runs == 1
    assert stats.success_rate == 50.0


# ----------------------------------------------------------------------
# Loosely typed definitions and payloads


@pytest.mark.asyncio
@pytest.mark.parametrize("expression", [None, 123, ["email", "exists", "x"]])
async def test_non_string_condition_is_false_not_an_error(
    engine, repo, mailer, expression
):
    wf = Workflow(
        name="Odd condition",
        trigger=Trigger(trigger_type=TriggerType.NEW_SUBSCRIBER),
        steps=[
            Step(type=StepType.CONDITION, order=1, config={"condition": expression}),
            Step(
                type=StepType.SEND_EMAIL,
                order=2,
                config={"subject": "Hello", "body": "..."},
            ),
        ],
    )
    await repo.save_workflow(wf)

    await engine.trigger_workflows(TriggerType.NEW_SUBSCRIBER, {"email": "s@x.com"})
    await engine.drain()

    [ex] = await repo.list_executions(wf.id)
    assert ex.status == ExecutionStatus.COMPLETED
    cond_log, _ = await repo.list_step_logs(ex.id)
    assert cond_log.status == StepLogStatus.COMPLETED
    assert cond_log.output["conditionMet"] is False
    assert [m.to for m in mailer.sent] == ["s@x.com"]


@pytest.mark.asyncio
async def test_non_string_email_still_starts_one_execution(engine, repo, mailer):
    wf = _hello_workflow()
    await repo.save_workflow(wf)

    await engine.trigger_workflows(TriggerType.NEW_SUBSCRIBER, {"email": 42})
    await engine.drain()

    [ex] = await repo.list_executions(wf.id)
    assert ex.subscriber_email == "42"
    assert ex.trigger_data == {"email": 42}
    assert ex.status == ExecutionStatus.COMPLETED
    assert [m.to for m in mailer.sent] == ["42"]
