"""Tests for the async evaluation scheduler."""

import asyncio

import pytest

from evoprompt.dispatcher import EvaluationDispatcher
from evoprompt.errors import EvoPromptError, NotFoundError, QueueFullError, ValidationError
from evoprompt.interfaces import Candidate
from evoprompt.metrics import Metrics
from evoprompt.population import PopulationStore
from evoprompt.scheduler import EvaluationScheduler, SchedulerConfig
from evoprompt.task import TaskStatus


class RecordingEvaluator:
    """Evaluator that records call order and tracks concurrency."""

    def __init__(self, delay: float = 0.0, fitness: float = 0.5):
        self.delay = delay
        self.fitness = fitness
        self.calls = []
        self.current = 0
        self.peak = 0

    async def __call__(self, candidate):
        self.calls.append(candidate.prompt)
        self.current += 1
        self.peak = max(self.peak, self.current)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.current -= 1
        return {"quality": self.fitness, "prompt_length": len(candidate.prompt)}


@pytest.mark.asyncio
async def test_workers_dispatch_in_priority_order():
    evaluator = RecordingEvaluator()
    scheduler = EvaluationScheduler(SchedulerConfig(max_concurrent=1))
    for priority in ["low", "critical", "normal", "high"]:
        await scheduler.submit(Candidate.create(priority), evaluator, priority=priority)

    await scheduler.start()
    await scheduler.join()
    await scheduler.stop()

    assert evaluator.calls == ["critical", "high", "normal", "low"]


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    evaluator = RecordingEvaluator(delay=0.02)
    metrics = Metrics()
    async with EvaluationScheduler(SchedulerConfig(max_concurrent=2), metrics=metrics) as scheduler:
        for index in range(6):
            await scheduler.submit(Candidate.create(f"prompt {index}"), evaluator)

    assert len(evaluator.calls) == 6
    assert evaluator.peak <= 2
    assert metrics.concurrent_evals_peak <= 2
    assert metrics.tasks_completed == 6


@pytest.mark.asyncio
async def test_timeout_produces_failed_task_with_timeout_kind():
    async def slow(candidate):
        await asyncio.sleep(1.0)
        return 1.0

    metrics = Metrics()
    async with EvaluationScheduler(SchedulerConfig(eval_timeout_seconds=0.05), metrics=metrics) as scheduler:
        task = await scheduler.submit(Candidate.create("slow prompt"), slow)
        await scheduler.wait_for(task.id, timeout=2.0)

    assert task.status is TaskStatus.FAILED
    assert task.error.kind == "timeout"
    assert task.error.is_timeout
    assert metrics.tasks_timed_out == 1
    assert scheduler.get_result(task.id).fitness is None


@pytest.mark.asyncio
async def test_per_task_timeout_overrides_config():
    async def slow(candidate):
        await asyncio.sleep(0.2)
        return 1.0

    async with EvaluationScheduler(SchedulerConfig(eval_timeout_seconds=5.0)) as scheduler:
        task = await scheduler.submit(Candidate.create("p"), slow, timeout_seconds=0.01)

    assert task.status is TaskStatus.FAILED
    assert task.error.kind == "timeout"


@pytest.mark.asyncio
async def test_evaluator_failure_is_isolated():
    async def flaky(candidate):
        if "bad" in candidate.prompt:
            raise RuntimeError("scorer crashed")
        return 0.9

    async with EvaluationScheduler() as scheduler:
        bad = await scheduler.submit(Candidate.create("bad prompt"), flaky)
        good = await scheduler.submit(Candidate.create("good prompt"), flaky)

    assert bad.status is TaskStatus.FAILED
    assert "scorer crashed" in str(bad.error)
    assert bad.error.task_id == bad.id
    assert good.status is TaskStatus.COMPLETED
    assert scheduler.get_result(good.id).fitness == 0.9


@pytest.mark.asyncio
async def test_non_numeric_result_fails_with_invalid_fitness():
    async def broken(candidate):
        return {"score": "high"}

    async with EvaluationScheduler() as scheduler:
        task = await scheduler.submit(Candidate.create("p"), broken)

    assert task.status is TaskStatus.FAILED
    assert task.error.kind == "invalid_fitness"


@pytest.mark.asyncio
async def test_cancel_pending_task():
    evaluator = RecordingEvaluator()
    scheduler = EvaluationScheduler(SchedulerConfig(max_concurrent=1))
    keep = await scheduler.submit(Candidate.create("keep"), evaluator)
    drop = await scheduler.submit(Candidate.create("drop"), evaluator)

    cancelled = await scheduler.cancel(drop.id)
    assert cancelled.status is TaskStatus.CANCELLED
    assert scheduler.get_result(drop.id) is None

    await scheduler.start()
    await scheduler.join()

    assert evaluator.calls == ["keep"]
    with pytest.raises(NotFoundError):
        await scheduler.cancel(keep.id)
    with pytest.raises(NotFoundError):
        await scheduler.cancel("task_unknown")
    await scheduler.stop()
    assert scheduler.status().cancelled == 1


@pytest.mark.asyncio
async def test_queue_full_applies_backpressure():
    scheduler = EvaluationScheduler(SchedulerConfig(max_queue_size=2))
    evaluator = RecordingEvaluator()
    await scheduler.submit(Candidate.create("a"), evaluator)
    await scheduler.submit(Candidate.create("b"), evaluator)

    with pytest.raises(QueueFullError):
        await scheduler.submit(Candidate.create("c"), evaluator)

    assert scheduler.status().pending == 2
    await scheduler.stop()
    assert scheduler.status().cancelled == 2


@pytest.mark.asyncio
async def test_results_are_written_to_population():
    population = PopulationStore()
    candidate = population.add("Solve the equation step by step.")
    evaluator = RecordingEvaluator(fitness=0.75)

    async with EvaluationScheduler(population=population) as scheduler:
        task = await scheduler.submit(candidate.id, evaluator)

    assert task.status is TaskStatus.COMPLETED
    assert population.get(candidate.id).fitness == 0.75
    assert scheduler.get_result(task.id).metrics["prompt_length"] == len(candidate.prompt)


@pytest.mark.asyncio
async def test_submit_validates_candidate_and_evaluator():
    population = PopulationStore()
    scheduler = EvaluationScheduler(population=population)

    with pytest.raises(NotFoundError):
        await scheduler.submit(Candidate.create("stranger"), RecordingEvaluator())
    with pytest.raises(NotFoundError):
        await scheduler.submit("cand_missing", RecordingEvaluator())

    member = population.add("member")
    with pytest.raises(ValidationError):
        await scheduler.submit(member, "reasoning")
    await scheduler.stop()


@pytest.mark.asyncio
async def test_task_type_evaluator_goes_through_dispatcher():
    seen = []

    async def reasoning_handler(candidate, task):
        seen.append(task.get("expected_answer"))
        return 0.6

    async def fallback(candidate, task):
        return 0.1

    dispatcher = EvaluationDispatcher(fallback, {"reasoning": reasoning_handler})
    async with EvaluationScheduler(dispatcher=dispatcher) as scheduler:
        task = await scheduler.submit(
            Candidate.create("p"), "reasoning", metadata={"task": {"expected_answer": "42"}}
        )

    assert task.result.fitness == 0.6
    assert seen == ["42"]


@pytest.mark.asyncio
async def test_get_result_is_none_while_pending():
    scheduler = EvaluationScheduler()
    task = await scheduler.submit(Candidate.create("p"), RecordingEvaluator())

    assert scheduler.get_result(task.id) is None
    assert scheduler.get_task(task.id).status is TaskStatus.PENDING
    with pytest.raises(NotFoundError):
        scheduler.get_result("task_missing")
    await scheduler.stop()


@pytest.mark.asyncio
async def test_task_done_hook_failures_do_not_stop_workers():
    done = []

    def hook(task):
        done.append(task.id)
        raise RuntimeError("hook exploded")

    async with EvaluationScheduler(on_task_done=hook) as scheduler:
        first = await scheduler.submit(Candidate.create("one"), RecordingEvaluator())
        second = await scheduler.submit(Candidate.create("two"), RecordingEvaluator())

    assert sorted(done) == sorted([first.id, second.id])
    assert second.status is TaskStatus.COMPLETED


class BrokenEventLog:
    def __init__(self):
        self.attempts = 0

    async def log(self, event, payload):
        self.attempts += 1
        raise OSError("disk full")


@pytest.mark.asyncio
async def test_event_log_failures_do_not_stop_workers():
    event_log = BrokenEventLog()
    scheduler = EvaluationScheduler(SchedulerConfig(max_concurrent=1), event_logger=event_log)
    tasks = [await scheduler.submit(Candidate.create(f"prompt {i}"), RecordingEvaluator()) for i in range(3)]

    await scheduler.start()
    await asyncio.wait_for(scheduler.join(), timeout=2.0)
    await scheduler.stop()

    assert [task.status for task in tasks] == [TaskStatus.COMPLETED] * 3
    assert event_log.attempts == 3


@pytest.mark.asyncio
async def test_status_and_stopped_scheduler():
    scheduler = EvaluationScheduler(SchedulerConfig(max_concurrent=3))
    await scheduler.submit(Candidate.create("p"), RecordingEvaluator())
    await scheduler.start()
    await scheduler.join()

    status = scheduler.status()
    assert status.submitted == 1
    assert status.completed == 1
    assert status.running == 0
    assert status.pending == 0
    assert status.capacity == 0.0
    assert not status.at_capacity

    await scheduler.stop()
    with pytest.raises(EvoPromptError):
        await scheduler.submit(Candidate.create("late"), RecordingEvaluator())


def test_task_ids_follow_counter_format():
    async def run():
        scheduler = EvaluationScheduler()
        first = await scheduler.submit(Candidate.create("a"), RecordingEvaluator())
        second = await scheduler.submit(Candidate.create("b"), RecordingEvaluator())
        await scheduler.stop()
        return first.id, second.id

    first_id, second_id = asyncio.run(run())
    assert first_id.startswith("task_1_")
    assert second_id.startswith("task_2_")


@pytest.mark.parametrize(
    "kwargs",
    [{"max_concurrent": 0}, {"max_queue_size": 0}, {"capacity_threshold": 1.5}, {"eval_timeout_seconds": 0}],
)
def test_scheduler_config_validation(kwargs):
    with pytest.raises(ValidationError):
        SchedulerConfig(**kwargs)
