import time
import logging
import functools

from ..errors import QuotaExceededError, TransientError

logger = logging.getLogger(__name__)


def retry_with_backoff(max_retries: int = 2, base_delay: float = 1.0, max_delay: float = 30.0):
    """Decorator for retrying remote calls with exponential backoff.

    Retries TransientError (timeouts, 429, 5xx). Quota errors and every
    other exception are raised immediately.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except QuotaExceededError:
                    raise
                except TransientError as e:
                    if attempt == max_retries:
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    retry_after = getattr(e, "retry_after", None)
                    if retry_after:
                        delay = max(delay, float(retry_after))

                    logger.warning(
                        f"{type(e).__name__}: {e} - retry {attempt + 1}/{max_retries} "
                        f"in {delay:.1f}s"
                    )
                    time.sleep(delay)

        return wrapper

    return decorator
