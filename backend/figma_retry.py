"""
Bounded retry for setup-phase commands.

This is the only retry policy in the project: a fixed number of attempts with
a fixed delay between them. Per-card calls never retry; a single failure is
recorded against the card instead.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from figma_communicator import FigmaChannelSession, FigmaCommandError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0:
            raise ValueError("delay must be non-negative")


DEFAULT_SETUP_POLICY = RetryPolicy(max_attempts=3, delay=1.0)


class CommandNotReadyError(FigmaCommandError):
    """A setup command kept failing after every allowed attempt."""

    def __init__(self, command: str, attempts: int, last_error: BaseException):
        self.command = command
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Command '{command}' failed after {attempts} attempt(s): {last_error}. "
            "Check that the Figma plugin is running, connected to the same channel, "
            "and that the target document is open."
        )


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (FigmaCommandError,),
    label: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or ``policy.max_attempts`` is reached.

    Only exceptions in ``retry_on`` are retried; anything else propagates at once.
    The last retryable exception is re-raised when attempts run out.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            last_error = e
            if attempt == policy.max_attempts:
                break
            logger.warning(f"🔁 {label} attempt {attempt}/{policy.max_attempts} failed: {e}. Retrying in {policy.delay}s...")
            await asyncio.sleep(policy.delay)
    assert last_error is not None
    raise last_error


async def ensure_command_ready(
    session: FigmaChannelSession,
    command: str,
    params: Optional[Dict[str, Any]] = None,
    policy: RetryPolicy = DEFAULT_SETUP_POLICY,
) -> Any:
    """
    Issue ``command`` with bounded retries.

    Raises:
        CommandNotReadyError: After all attempts failed, naming the command and the likely cause.
    """
    try:
        return await retry_async(
            lambda: session.send_command(command, params),
            policy,
            label=command,
        )
    except FigmaCommandError as e:
        logger.error(f"❌ {command} not ready after {policy.max_attempts} attempt(s): {e}")
        raise CommandNotReadyError(command, policy.max_attempts, e) from e
