import pytest

from menuwatch.errors import ConflictError
from menuwatch.utils.retry import retry_on_conflict


def test_retries_until_success():
    calls = []

    @retry_on_conflict(base_delay=0)
    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConflictError("collision")
        return "ok"

    assert flaky() == "ok"
    assert len(calls) == 3


def test_gives_up_after_attempts():
    calls = []

    @retry_on_conflict(attempts=2, base_delay=0)
    def always_conflicts():
        calls.append(1)
        raise ConflictError("collision")

    with pytest.raises(ConflictError):
        always_conflicts()
    assert len(calls) == 2


def test_other_errors_are_not_retried():
    calls = []

    @retry_on_conflict
    def broken():
        calls.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        broken()
    assert len(calls) == 1
