import pytest

from src.analysis.domain import AnalysisTask, AnalysisProjection, NormalizedResult, MAX_CONSOLE_LOGS
from src.config import TaskKind, TaskStatus, StepStatus


def _raise(error):
    try:
        raise error
    except Exception as e:
        return e


@pytest.fixture
def task():
    return AnalysisTask.create(owner_id="ticket-1", max_retries=3, correlation_id="abc")


def test_create_queues_task_in_its_own_batch(task):
    assert task.status == TaskStatus.QUEUED
    assert task.kind == TaskKind.ANALYSIS
    assert task.batch_id == task.id
    assert task.in_progress is True
    assert task.is_terminal is False


def test_step_with_same_name_is_updated_in_place(task):
    task.append_step("remote_analysis", "Calling AI agent")
    task.append_step("remote_analysis", "AI response received", StepStatus.COMPLETED, 250)

    assert len(task.processing_steps) == 1
    step = task.processing_steps[0]
    assert step["description"] == "AI response received"
    assert step["status"] == StepStatus.COMPLETED
    assert step["duration_ms"] == 250


def test_console_log_keeps_most_recent_entries(task):
    for index in range(150):
        task.append_log(f"line {index}")

    assert len(task.console_logs) == MAX_CONSOLE_LOGS
    assert task.console_logs[0]["message"] == "line 50"
    assert task.console_logs[-1]["message"] == "line 149"


def test_failed_attempt_below_budget_is_retrying(task):
    task.mark_failed(_raise(RuntimeError("boom")), retry_count=1)

    assert task.status == TaskStatus.RETRYING
    assert task.retry_count == 1
    assert task.error_class == "RuntimeError"
    assert task.error_message == "boom"
    assert task.error_backtrace
    assert task.completed_at is None


def test_failed_attempt_at_budget_is_failed(task):
    task.mark_failed(_raise(RuntimeError("boom")), retry_count=2, max_retries=2)

    assert task.status == TaskStatus.FAILED
    assert task.max_retries == 2
    assert task.completed_at is not None
    assert task.can_retry is True
    assert task.error_summary == "RuntimeError: boom"


def test_error_summary_truncates_long_messages(task):
    task.mark_failed(_raise(ValueError("x" * 300)), retry_count=3)

    assert task.error_summary == "ValueError: " + "x" * 97 + "..."


def test_mark_completed_ignores_unknown_keys_and_clamps_confidence(task):
    task.mark_completed({"confidence_score": 1.4, "tags_generated": ["a"], "bogus": 1})

    assert task.status == TaskStatus.COMPLETED
    assert task.confidence_score == 1.0
    assert task.tags_generated == ["a"]
    assert not hasattr(task, "bogus")
    assert task.high_confidence is True


def test_transitions_are_not_guarded(task):
    task.mark_dismissed()
    task.mark_completed({"confidence_score": 0.4})

    assert task.status == TaskStatus.COMPLETED
    assert task.can_retry is False


def test_reset_for_retry_clears_error_state(task):
    task.append_step("final_failure", "All retries exhausted", StepStatus.ERROR)
    task.mark_failed(_raise(RuntimeError("boom")), retry_count=3)

    task.reset_for_retry("new-correlation", 3)

    assert task.status == TaskStatus.QUEUED
    assert task.retry_count == 0
    assert task.correlation_id == "new-correlation"
    assert task.error_message is None
    assert task.error_class is None
    assert task.error_backtrace == []
    assert task.step_by_name("final_failure") is None


def test_retrieval_sources_summary(task):
    assert task.retrieval_sources_summary == "No sources"

    task.retrieval_items = [{"filename": name} for name in ("a.md", "b.md", "a.md", "c.md", "d.md")]

    assert task.source_files == ["a.md", "b.md", "c.md", "d.md"]
    assert task.retrieval_sources_summary == "a.md, b.md and 2 more"


def test_durations_in_seconds(task):
    task.total_duration_ms = 1534
    task.remote_call_duration_ms = 1200

    assert task.total_duration_seconds == 1.53
    assert task.remote_call_duration_seconds == 1.2


def test_projection_without_result_leaves_result_fields_unset(task):
    projection = AnalysisProjection.from_task(task)

    assert projection.analysis_status == TaskStatus.QUEUED
    assert projection.result_values() == {}


def test_projection_with_result_carries_values(task):
    task.mark_completed({"confidence_score": 0.9})
    result = NormalizedResult(summary="ok", tags=["a"], source_files=["f.md"])

    values = AnalysisProjection.from_task(task, result).result_values()

    assert values["summary"] == "ok"
    assert values["confidence_score"] == 0.9
    assert values["tags"] == ["a"]
    assert values["source_files"] == ["f.md"]
    assert "sentiment" not in values
