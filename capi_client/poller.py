import asyncio
import inspect
import random
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from capi_client.errors import (
    OperationFailedError,
    PollingCancelledError,
    PollingTimeoutError,
    default_is_retryable,
)
from capi_client.models import Operation, PollPolicy

Fetch = Callable[[str], Awaitable[Operation]]
StatusCallback = Callable[[Operation], Any]


def fixed_delay(seconds: float) -> Callable[[int], float]:
    """Delay function that always waits the same amount of time"""
    if seconds <= 0:
        raise ValueError("delay must be greater than 0")
    return lambda attempt: seconds


def exponential_backoff(
    initial: float,
    factor: float = 2.0,
    max_delay: Optional[float] = None,
    jitter: bool = False,
) -> Callable[[int], float]:
    """Delay function growing by ``factor`` after every attempt, optionally capped and jittered"""
    if initial <= 0:
        raise ValueError("initial delay must be greater than 0")

    def _delay(attempt: int) -> float:
        delay = initial * (factor ** max(attempt - 1, 0))
        if max_delay is not None:
            delay = min(delay, max_delay)
        if jitter:
            delay *= 1 + 0.2 * random.random()
        return delay

    return _delay


class OperationPoller:
    """Waits for one remote operation to reach a terminal state.

    A poller is single use: it owns the loop state of exactly one call and never
    writes to the remote operation. Fetches are issued strictly one after another.
    """

    def __init__(
        self,
        identifier: str,
        fetch: Fetch,
        policy: PollPolicy,
        cancel_event: Optional[asyncio.Event] = None,
        is_retryable: Callable[[BaseException], bool] = default_is_retryable,
        on_status_change: Optional[StatusCallback] = None,
    ):
        if not identifier:
            raise ValueError("identifier must not be empty")
        self.identifier = identifier
        self.fetch = fetch
        self.policy = policy
        self.cancel_event = cancel_event
        self.is_retryable = is_retryable
        self.on_status_change = on_status_change
        self.logger = logger

        self.attempts = 0
        self.fetch_failures = 0
        self.last_operation: Optional[Operation] = None
        self.last_error: Optional[BaseException] = None

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def _handle_status_change(self, operation: Operation) -> None:
        """Invoke the status change callback if the state has changed"""
        previous = self.last_operation.state if self.last_operation is not None else None
        if previous == operation.state:
            return

        self.logger.debug(f"Operation {self.identifier} state changed to {operation.state!r}")
        if self.on_status_change is not None:
            result = self.on_status_change(operation)
            if inspect.isawaitable(result):
                await result

    async def _wait_before_retry(self, delay: float) -> None:
        """Waits for the delay, returning early when cancellation is signalled"""
        self.logger.debug(
            f"Operation {self.identifier} not finished, waiting {delay:.2f}s before next attempt"
        )
        if self.cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _finish(self, operation: Operation) -> Operation:
        if self.policy.is_success(operation.state):
            self.logger.info(
                f"Operation {self.identifier} reached {operation.state!r} "
                f"after {self.attempts} attempt(s)"
            )
            return operation

        self.logger.error(
            f"Operation {self.identifier} failed with state {operation.state!r}: "
            f"{operation.description or 'no details available'}"
        )
        raise OperationFailedError(
            f"Operation {self.identifier} failed: {operation.description or operation.state}",
            self.identifier,
            operation,
            self.attempts,
        )

    def _exhausted(self, reason: str) -> PollingTimeoutError:
        last_state = self.last_operation.state if self.last_operation is not None else None
        self.logger.error(
            f"Operation {self.identifier} did not finish {reason} (last state: {last_state!r})"
        )
        return PollingTimeoutError(
            f"Operation {self.identifier} did not reach a terminal state {reason}",
            self.identifier,
            self.last_operation,
            self.attempts,
            self.last_error,
        )

    def _cancellation(self) -> PollingCancelledError:
        self.logger.info(f"Polling of operation {self.identifier} cancelled by caller")
        return PollingCancelledError(
            f"Polling of operation {self.identifier} was cancelled",
            self.identifier,
            self.last_operation,
            self.attempts,
        )

    async def _fetch_once(self) -> Optional[Operation]:
        """Fetches the operation, returning None after a retryable failure"""
        self.attempts += 1
        try:
            return await self.fetch(self.identifier)
        except Exception as fetch_error:
            if not self.is_retryable(fetch_error):
                self.logger.error(
                    f"Non-retryable error fetching operation {self.identifier}: {fetch_error}"
                )
                raise
            self.fetch_failures += 1
            self.last_error = fetch_error
            self.logger.warning(
                f"Error fetching operation {self.identifier} "
                f"(attempt {self.attempts}, {self.fetch_failures} failure(s)): {fetch_error}"
            )
            return None

    async def poll(self) -> Operation:
        """Poll until a terminal state, exhaustion or cancellation"""
        loop = asyncio.get_event_loop()
        deadline = None
        if self.policy.timeout is not None:
            deadline = loop.time() + self.policy.timeout

        while True:
            if self._cancelled():
                raise self._cancellation()

            operation = await self._fetch_once()
            if operation is None:
                delay = self.policy.fetch_error_delay or self.policy.delay_for(self.attempts)
            else:
                await self._handle_status_change(operation)
                self.last_operation = operation
                if self.policy.is_terminal(operation.state):
                    return self._finish(operation)
                delay = self.policy.delay_for(self.attempts)

            if self.policy.max_attempts is not None and self.attempts >= self.policy.max_attempts:
                raise self._exhausted(f"within {self.attempts} attempts")
            if self._cancelled():
                raise self._cancellation()
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise self._exhausted(f"within {self.policy.timeout} seconds")
                delay = min(delay, remaining)

            await self._wait_before_retry(delay)

            if self._cancelled():
                raise self._cancellation()
            if deadline is not None and loop.time() >= deadline:
                raise self._exhausted(f"within {self.policy.timeout} seconds")


async def poll_until_terminal(
    identifier: str,
    fetch: Fetch,
    policy: PollPolicy,
    *,
    cancel_event: Optional[asyncio.Event] = None,
    is_retryable: Callable[[BaseException], bool] = default_is_retryable,
    on_status_change: Optional[StatusCallback] = None,
) -> Operation:
    """Poll ``fetch(identifier)`` until the operation reaches a terminal state.

    Returns the terminal operation when its state is one of ``policy.success_states``.

    Raises:
        OperationFailedError: The operation reached one of ``policy.failure_states``.
        PollingTimeoutError: ``max_attempts`` or ``timeout`` ran out first.
        PollingCancelledError: ``cancel_event`` was set.
        Exception: Whatever ``fetch`` raised when ``is_retryable`` rejected it.
    """
    poller = OperationPoller(
        identifier,
        fetch,
        policy,
        cancel_event=cancel_event,
        is_retryable=is_retryable,
        on_status_change=on_status_change,
    )
    return await poller.poll()
