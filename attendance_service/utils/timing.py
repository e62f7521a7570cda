"""
Timing utilities.

Retry helper for flaky network fetches and uptime formatting for /health.
"""

import time
from typing import Callable, Optional, Tuple, Type, TypeVar

T = TypeVar('T')


def format_uptime(seconds: float) -> str:
    """
    Format uptime in human-readable format.

    Args:
        seconds: Uptime in seconds

    Returns:
        Formatted string (e.g., "1d 2h 30m 45s")
    """
    seconds = int(seconds)

    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)

    parts = []
    if days:
        parts.append(f'{days}d')
    if hours:
        parts.append(f'{hours}h')
    if minutes:
        parts.append(f'{minutes}m')
    parts.append(f'{secs}s')

    return ' '.join(parts)


def retry_with_backoff(
    func: Callable[[], T],
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    backoff_factor: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """
    Call func until it succeeds, sleeping longer after each failure.

    Args:
        func: Function to call
        max_attempts: Total attempts (>= 1)
        initial_delay: Delay after the first failure in seconds
        backoff_factor: Delay multiplier per attempt
        retry_on: Exception types that trigger another attempt; anything
            else propagates immediately
        sleep: Sleep function (injectable for tests)

    Returns:
        Function result

    Raises:
        The last exception if all attempts fail
    """
    delay = initial_delay
    last_exception: Optional[BaseException] = None

    for attempt in range(max(1, max_attempts)):
        try:
            return func()
        except retry_on as e:
            last_exception = e
            if attempt < max_attempts - 1:
                sleep(delay)
                delay *= backoff_factor

    if last_exception:
        raise last_exception

    raise RuntimeError('Retry failed with no exception')
