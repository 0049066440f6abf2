"""
Executor

Runs a caller-supplied mutating action under a deadline.

The action is opaque: it may run shell commands, write files or call
external services. The executor only observes success, a raised error, a
timeout, or a user interrupt. Cancellation is best-effort. Plain callables
are asked to stop through :func:`cancellation_requested`; coroutine actions
are cancelled at their next await point. After asking, the executor waits a
bounded grace period for the worker to exit; an action still running after
that is flagged on the raised error so callers never treat its paths as
restored.
"""

import asyncio
import contextvars
import inspect
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Optional

from ..errors import ActionCancelled, ActionFailed, ActionTimedOut


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30 * 60
DEFAULT_CANCEL_GRACE = 5.0
CANCEL_POLL_INTERVAL = 0.1

_cancel_event: contextvars.ContextVar = contextvars.ContextVar(
    "devstack_safety_cancel_event", default=None
)


def cancellation_requested() -> bool:
    """True inside an action whose executor has asked it to stop."""
    event = _cancel_event.get()
    return event is not None and event.is_set()


class Executor:
    """Runs actions on a worker thread and enforces their deadline."""

    def __init__(
        self,
        default_timeout: float = DEFAULT_TIMEOUT,
        cancel_grace: float = DEFAULT_CANCEL_GRACE,
    ):
        self.default_timeout = default_timeout
        self.cancel_grace = cancel_grace

    def run(
        self,
        action: Callable[[], Any],
        timeout: Optional[float] = None,
        operation_key: Optional[str] = None,
    ) -> Any:
        """
        Invoke ``action`` and return its result.

        Args:
            action: Zero-argument callable, or one returning a coroutine
            timeout: Deadline in seconds (defaults to ``default_timeout``)
            operation_key: Key used in error reports and thread names

        Raises:
            ActionFailed: If the action raised
            ActionTimedOut: If the deadline passed first
            ActionCancelled: If the user interrupted the wait
        """
        if timeout is None:
            timeout = self.default_timeout
        cancel_event = threading.Event()
        context = contextvars.copy_context()

        def invoke():
            _cancel_event.set(cancel_event)
            result = action()
            if inspect.isawaitable(result):
                result = asyncio.run(_await_cancellable(result, cancel_event))
            return result

        pool = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"safety-{operation_key or 'action'}",
        )
        future = pool.submit(context.run, invoke)
        try:
            done, _ = wait([future], timeout=timeout)

            if not done:
                logger.error(f"Action for {operation_key} timed out after {timeout:g}s")
                raise self._stop(
                    future, cancel_event, ActionTimedOut(timeout, operation_key=operation_key)
                )

            try:
                return future.result()
            except KeyboardInterrupt:
                raise
            except Exception as e:
                raise ActionFailed(e, operation_key=operation_key) from e

        except KeyboardInterrupt:
            logger.warning(f"Action for {operation_key} interrupted by user")
            raise self._stop(future, cancel_event, ActionCancelled(operation_key=operation_key))

        finally:
            pool.shutdown(wait=False)

    def _stop(self, future, cancel_event: threading.Event, error: ActionFailed) -> ActionFailed:
        """Ask the worker to stop and give it ``cancel_grace`` seconds to exit."""
        cancel_event.set()
        try:
            done, _ = wait([future], timeout=self.cancel_grace)
        except KeyboardInterrupt:
            # A second interrupt skips the grace period.
            done = set()

        if not done:
            error.action_still_running = True
            error.worker = future
            logger.error(
                f"Action for {error.operation_key} still running "
                f"{self.cancel_grace:g}s after cancellation"
            )
        return error


async def _await_cancellable(awaitable, cancel_event: threading.Event) -> Any:
    task = asyncio.ensure_future(awaitable)
    while not task.done():
        if cancel_event.is_set():
            task.cancel()
        await asyncio.wait({task}, timeout=CANCEL_POLL_INTERVAL)
    return task.result()
