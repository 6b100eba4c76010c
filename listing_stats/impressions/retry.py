from functools import wraps
from typing import Callable, Tuple, Type
import logging
import time

logger = logging.getLogger(__name__)


def retry(
    max_attempts: int = 3,
    delay_seconds: float = 0.05,
    backoff_factor: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    retry_if: Callable[[Exception], bool] = lambda exc: True,
):
    """
    Retry decorator with exponential backoff

    Args:
        max_attempts: Maximum number of attempts
        delay_seconds: Initial delay between retries
        backoff_factor: Multiplier for delay after each retry
        exceptions: Tuple of exception types to catch and retry
        retry_if: Predicate deciding whether a caught exception is transient
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            current_delay = delay_seconds

            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts or not retry_if(e):
                        raise

                    logger.debug(
                        "%s attempt %s failed: %s. Retrying in %.3fs",
                        func.__name__, attempt, e, current_delay,
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff_factor
                    attempt += 1

        return wrapper
    return decorator


def is_sqlite_busy(exc: Exception) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "database is busy" in msg
