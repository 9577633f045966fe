from __future__ import annotations

import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)


def async_retrying(
    retry_on: type[BaseException] | tuple[type[BaseException], ...],
    *,
    attempts: int,
    initial_delay: float,
    max_delay: float | None = None,
    jitter: float | None = None,
    logger: logging.Logger | None = None,
) -> AsyncRetrying:
    """Bounded retry with jittered exponential backoff.

    The last exception is re-raised once ``attempts`` are used up; anything
    not matching ``retry_on`` propagates on the first failure.
    """
    return AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(attempts),
        wait=wait_exponential_jitter(
            initial=initial_delay,
            max=max_delay if max_delay is not None else initial_delay * 4,
            jitter=jitter if jitter is not None else initial_delay,
        ),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger or logging.getLogger(__name__), logging.WARNING),
    )
