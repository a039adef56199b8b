"""
Retry policy for calls to the content-generation/grading provider.

The provider gives us no structured error codes, so failures are classified
by their message text. Overload and rate-limit failures are retried with pure
exponential backoff; everything else is raised to the caller straight away.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, TypeVar, Union

from .errors import PermanentRemoteError, RemoteError, TransientRemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Case-insensitive substrings marking a failure as transient
TRANSIENT_MARKERS: Tuple[str, ...] = ("503", "overloaded", "unavailable", "quota", "429")


def _message_of(error: Union[BaseException, str]) -> str:
	if isinstance(error, str):
		return error
	return str(error) or repr(error)


def is_transient(error: Union[BaseException, str]) -> bool:
	"""
	Return True when ``error`` (an exception or a bare message) looks retryable.

	A failure is transient when its message contains any of
	:data:`TRANSIENT_MARKERS`, compared case-insensitively. All other
	failures are permanent.
	"""
	message = _message_of(error).lower()
	return any(marker in message for marker in TRANSIENT_MARKERS)


def remote_error(message: str) -> RemoteError:
	"""Build the RemoteError subclass matching the classification of ``message``."""
	if is_transient(message):
		return TransientRemoteError(message)
	return PermanentRemoteError(message)


def backoff_delay_ms(attempt_index: int, base_delay_ms: float) -> float:
	return base_delay_ms * (2 ** attempt_index)


async def _sleep_ms(delay_ms: float) -> None:
	await asyncio.sleep(delay_ms / 1000)


async def execute(
	operation: Callable[[], Awaitable[T]],
	*,
	max_attempts: int = 3,
	base_delay_ms: float = 1500,
	sleep: Callable[[float], Awaitable[None]] = _sleep_ms,
) -> T:
	"""
	Run ``operation`` until it succeeds or fails permanently.

	Args:
		operation: zero-argument coroutine function to invoke
		max_attempts: total number of invocations allowed
		base_delay_ms: delay before the first retry; doubled for each later retry
		sleep: awaitable taking a delay in milliseconds (injected by tests)

	Returns:
		Whatever ``operation`` returns on its first successful attempt.

	Raises:
		The exception of the last attempt, unchanged.
	"""
	if max_attempts < 1:
		raise ValueError("max_attempts must be at least 1")
	attempt = 0
	while True:
		try:
			return await operation()
		except Exception as exc:
			last_attempt = attempt >= max_attempts - 1
			if last_attempt or not is_transient(exc):
				raise
			delay = backoff_delay_ms(attempt, base_delay_ms)
			logger.warning(
				"Transient failure on attempt %d/%d, retrying in %.0f ms: %s",
				attempt + 1,
				max_attempts,
				delay,
				_message_of(exc),
			)
			await sleep(delay)
			attempt += 1
