"""Tests for merging stage outcomes"""

from postgres_operator.result import Result, aggregate, merge


def test_no_preference_is_weakest():
    """No preference yields to any other outcome"""
    assert merge(Result(), Result()) == Result()
    assert merge(Result(), Result.after(30)) == Result.after(30)
    assert merge(Result.after(30), Result()) == Result.after(30)
    assert merge(Result(), None) == Result()


def test_shorter_delay_wins():
    """Given {none, after 30s, after 5s} the outcome is after 5s"""
    outcome = aggregate([Result(), Result.after(30), Result.after(5)])
    assert outcome == Result.after(5)
    assert outcome.requeue is False


def test_immediate_dominates_delays():
    outcome = aggregate([Result(), Result.after(30), Result.immediately(), Result.after(5)])
    assert outcome.requeue is True
    assert outcome.requeue_after == 0


def test_empty_aggregate():
    assert aggregate([]) == Result()
    assert aggregate([None, None]).is_zero


def test_str():
    assert str(Result()) == "no requeue"
    assert str(Result.after(5)) == "requeue after 5s"
    assert str(Result.immediately()) == "requeue immediately"
