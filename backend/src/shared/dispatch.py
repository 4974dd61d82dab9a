"""
Hand-off from the webhook acknowledgment to the verification worker.
The intake handler enqueues and returns; it never waits for the worker.
"""
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from .config import config
from .logging import logger
from .sqs import send_message


class SqsDispatcher:
    """Work goes to the task-completion queue; the SQS-triggered Lambda processes it."""

    def __init__(self, queue_url: str = None, client=None):
        self.queue_url = queue_url or config.TASK_COMPLETION_QUEUE_URL
        self.client = client

    def dispatch(self, message: Dict[str, Any]) -> bool:
        return send_message(self.queue_url, message, client=self.client) is not None


class ThreadPoolDispatcher:
    """In-process worker pool, used when no queue is configured."""

    def __init__(self, process: Callable[[Dict[str, Any]], Any], max_workers: int = None):
        self.process = process
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers or config.LOCAL_WORKER_THREADS,
            thread_name_prefix='gigstream-worker',
        )
        self.last_future: Optional[Future] = None

    def dispatch(self, message: Dict[str, Any]) -> bool:
        self.last_future = self.executor.submit(self._run, message)
        return True

    def _run(self, message: Dict[str, Any]) -> Any:
        # No redelivery in-process: the failure is logged and the task stays unpaid
        try:
            return self.process(message)
        except Exception:
            logger.exception(f"Background processing failed for task {message.get('payload', {}).get('taskId')}")
            return None

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
