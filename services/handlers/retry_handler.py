"""Retry handler for transient failures inside external handlers."""

import logging
import threading
from typing import Callable, Optional, Any
from shared.exceptions import ExecutionCancelledError, HandlerError, RetryExhaustedError, TaskError
from shared.constants import (
    MAX_RETRY_ATTEMPTS,
    INITIAL_RETRY_DELAY_SECONDS,
    MAX_RETRY_DELAY_SECONDS,
)


class RetryHandler:
    """Decides when to retry a failed call and calculates backoff delays"""

    def __init__(
        self,
        max_retries: int = MAX_RETRY_ATTEMPTS,
        sleep: Optional[Callable[[float], Any]] = None,
        cancel_token: Optional[threading.Event] = None,
    ):
        self.max_retries = min(max_retries, MAX_RETRY_ATTEMPTS)
        self.cancel_token = cancel_token or threading.Event()
        # Backoff waits on the token so a cancelled execution wakes up immediately
        self.sleep = sleep or self.cancel_token.wait

    def run(self, node_id: str, operation: Callable[[], Any]) -> Any:
        """Calls ``operation`` until it succeeds or a non-retryable error / the retry budget stops it"""
        retry_count = 0
        while True:
            self._raise_if_cancelled(node_id, retry_count)
            try:
                return operation()
            except HandlerError as e:
                task_error = self._parse_task_error(e)
                if not self.should_retry(node_id, task_error, retry_count):
                    if task_error and task_error.is_retryable and retry_count > 0:
                        raise RetryExhaustedError(
                            f"{e.message} (gave up after {retry_count} retries)",
                            node_id=node_id,
                            task_error=task_error.to_dict(),
                        ) from e
                    raise

                delay = self.calculate_backoff_delay(retry_count, task_error)
                retry_count += 1
                logging.info(
                    "Node will be retried",
                    extra={"node_id": node_id, "retry_attempt": retry_count, "delay_seconds": delay}
                )
                self.sleep(delay)

    def _raise_if_cancelled(self, node_id: str, retry_count: int) -> None:
        if self.cancel_token.is_set():
            logging.info("Execution cancelled, not sending request", extra={"node_id": node_id, "retry_count": retry_count})
            raise ExecutionCancelledError("Execution cancelled", node_id=node_id, retry_count=retry_count)

    def should_retry(self, node_id: str, task_error: Optional[TaskError], retry_count: int) -> bool:
        if not task_error:
            logging.info("Node error is not retryable (not a structured TaskError)", extra={"node_id": node_id})
            return False

        if not task_error.is_retryable:
            logging.info(
                "Node not eligible for retry",
                extra={"node_id": node_id, "error_type": task_error.error_type}
            )
            return False

        if retry_count >= self.max_retries:
            logging.warning(
                "Maximum retry attempts reached",
                extra={"node_id": node_id, "retry_count": retry_count, "max_attempts": self.max_retries}
            )
            return False

        return True

    def _parse_task_error(self, error: HandlerError) -> Optional[TaskError]:
        payload = error.context.get("task_error")
        if isinstance(payload, TaskError):
            return payload
        if isinstance(payload, dict) and "error_type" in payload:
            try:
                return TaskError(**payload)
            except ValueError as e:
                logging.debug(f"Failed to parse error as TaskError: {e}")
        return None

    def calculate_backoff_delay(self, retry_count: int, task_error: TaskError) -> float:
        """Exponential backoff with Retry-After header support"""
        if task_error.retry_after_seconds:
            delay = min(task_error.retry_after_seconds, MAX_RETRY_DELAY_SECONDS)
            logging.debug(
                f"Using Retry-After header delay: {delay}s",
                extra={"retry_after": task_error.retry_after_seconds}
            )
        else:
            # 0.5s, 1s, 2s, 4s, ...
            delay = min(INITIAL_RETRY_DELAY_SECONDS * (2 ** retry_count), MAX_RETRY_DELAY_SECONDS)
            logging.debug(f"Using exponential backoff delay: {delay}s", extra={"retry_count": retry_count})

        return delay
