"""Tests for the ordered stage runner"""

from postgres_operator.context import Context
from postgres_operator.errors import ReconcileCancelled, StageError
from postgres_operator.pipeline import Stage, run_pipeline
from postgres_operator.result import Result


def test_stages_run_in_order_and_results_merge():
    calls = []

    def stage(name, result=None):
        def run(ctx):
            calls.append(name)
            return result
        return Stage(name, run)

    outcome = run_pipeline(Context(), "default/demo", [
        stage("one"),
        stage("two", Result.after(30)),
        stage("three", Result.after(5)),
    ])

    assert calls == ["one", "two", "three"]
    assert outcome.ok
    assert outcome.result == Result.after(5)
    assert outcome.completed == ["one", "two", "three"]


def test_first_failure_stops_the_pipeline():
    calls = []

    def fail(ctx):
        calls.append("fail")
        raise ValueError("boom")

    outcome = run_pipeline(Context(), "default/demo", [
        Stage("first", lambda ctx: Result.immediately()),
        Stage("fail", fail),
        Stage("never", lambda ctx: calls.append("never")),
    ])

    assert calls == ["fail"]
    assert not outcome.ok
    assert isinstance(outcome.error, StageError)
    assert outcome.error.stage == "fail"
    assert outcome.error.key == "default/demo"
    assert isinstance(outcome.error.cause, ValueError)
    assert "fail failed for default/demo: boom" in str(outcome.error)
    # partial outcomes are discarded in favour of the error
    assert outcome.result == Result()
    assert outcome.completed == ["first"]


def test_cancellation_between_stages():
    ctx = Context()
    calls = []

    def cancel(c):
        calls.append("cancel")
        ctx.cancel()

    outcome = run_pipeline(ctx, "default/demo", [
        Stage("cancel", cancel),
        Stage("never", lambda c: calls.append("never")),
    ])

    assert calls == ["cancel"]
    assert isinstance(outcome.error.cause, ReconcileCancelled)
    assert outcome.error.stage == "never"


def test_expired_deadline():
    ctx = Context(timeout=0.001)
    ctx.deadline -= 1
    outcome = run_pipeline(ctx, "default/demo", [Stage("late", lambda c: None)])
    assert isinstance(outcome.error.cause, ReconcileCancelled)
    assert ctx.remaining() == 0.0
