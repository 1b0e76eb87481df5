"""
Unit tests for the retry handler.
"""

import pytest
from unittest.mock import Mock
from services.handlers.retry_handler import RetryHandler
from shared.exceptions import HandlerError, HandlerTimeoutError, RetryExhaustedError, TaskError


def transient(status=503, retry_after=None):
    error = TaskError(
        error_type="HTTP_ERROR",
        error_message=f"HTTP {status}",
        http_status_code=status,
        is_retryable=True,
        retry_after_seconds=retry_after,
    )
    return HandlerError(error.error_message, node_id="a", task_error=error.to_dict())


def test_succeeds_after_transient_failures():
    sleep = Mock()
    operation = Mock(side_effect=[transient(), transient(), {"status": 200}])

    result = RetryHandler(max_retries=2, sleep=sleep).run("a", operation)

    assert result == {"status": 200}
    assert operation.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]


def test_gives_up_after_max_retries():
    sleep = Mock()
    operation = Mock(side_effect=transient())

    with pytest.raises(RetryExhaustedError, match="gave up after 2 retries"):
        RetryHandler(max_retries=2, sleep=sleep).run("a", operation)

    assert operation.call_count == 3


def test_non_retryable_error_is_raised_immediately():
    sleep = Mock()
    operation = Mock(side_effect=HandlerError("URL required", node_id="a"))

    with pytest.raises(HandlerError, match="URL required"):
        RetryHandler(max_retries=3, sleep=sleep).run("a", operation)

    assert operation.call_count == 1
    sleep.assert_not_called()


def test_zero_retries_keeps_original_error():
    error = TaskError(error_type="TIMEOUT", error_message="timed out", is_retryable=True)
    operation = Mock(side_effect=HandlerTimeoutError("timed out", node_id="a", task_error=error.to_dict()))

    with pytest.raises(HandlerTimeoutError):
        RetryHandler(max_retries=0, sleep=Mock()).run("a", operation)


def test_retry_after_is_honoured_and_capped():
    handler = RetryHandler(max_retries=1)
    task_error = TaskError(error_type="HTTP_ERROR", error_message="429", is_retryable=True, retry_after_seconds=3)

    assert handler.calculate_backoff_delay(0, task_error) == 3

    task_error.retry_after_seconds = 120
    assert handler.calculate_backoff_delay(0, task_error) == 10


def test_exponential_backoff_is_capped():
    handler = RetryHandler()
    task_error = TaskError(error_type="HTTP_ERROR", error_message="503", is_retryable=True)

    assert handler.calculate_backoff_delay(0, task_error) == 0.5
    assert handler.calculate_backoff_delay(2, task_error) == 2.0
    assert handler.calculate_backoff_delay(10, task_error) == 10
