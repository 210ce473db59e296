"""
Retry with exponential backoff for rate-limited remote calls, and a
paginator that drains a cursor-based listing API.
"""

import time
import logging
from collections import namedtuple
from typing import Any, Callable, Dict, List, Optional

from .storage import RemoteTransientError


logger = logging.getLogger(__name__)


class RetryPolicy(namedtuple('RetryPolicy', ['max_attempts', 'initial_backoff', 'max_backoff'])):
    """
    How often, and how patiently, to retry a rate-limited call.

    Backoffs are in seconds.
    """

    __slots__ = ()

    @classmethod
    def from_dict(cls, settings: Dict[str, Any]) -> 'RetryPolicy':
        return cls(
            max_attempts=settings.get('max_attempts', DEFAULT_POLICY.max_attempts),
            initial_backoff=settings.get('initial_backoff', DEFAULT_POLICY.initial_backoff),
            max_backoff=settings.get('max_backoff', DEFAULT_POLICY.max_backoff),
        )


DEFAULT_POLICY = RetryPolicy(max_attempts=6, initial_backoff=0.1, max_backoff=5.0)


def is_rate_limit_error(error: Exception) -> bool:
    return isinstance(error, RemoteTransientError)


def with_retry(
    operation: Callable[[], Any],
    max_attempts: int = DEFAULT_POLICY.max_attempts,
    initial_backoff: float = DEFAULT_POLICY.initial_backoff,
    max_backoff: float = DEFAULT_POLICY.max_backoff,
    is_rate_limited: Callable[[Exception], bool] = is_rate_limit_error,
) -> Any:
    """
    Call operation, retrying it while it fails because of rate limiting.

    The first call is made immediately. After the first rate-limited failure
    the wait is initial_backoff, doubling after each further failure and
    never exceeding max_backoff. Any other error is raised at once.

    Args:
        operation: Callable taking no arguments
        max_attempts: Total number of calls allowed (1 means never retry)
        initial_backoff: Wait after the first failure, in seconds
        max_backoff: Longest wait between calls, in seconds
        is_rate_limited: Predicate deciding whether an error is retryable

    Returns:
        Whatever operation returns

    Raises:
        The last rate-limit error once max_attempts calls have failed, or the
        first error that is not a rate-limit error
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    backoff = 0
    attempt = 0

    while True:
        if backoff:
            time.sleep(backoff)

        attempt += 1
        try:
            return operation()
        except Exception as e:
            if not is_rate_limited(e):
                raise

            if attempt >= max_attempts:
                logger.error(f"Giving up after {attempt} rate-limited attempts: {e}")
                raise

            backoff = initial_backoff if backoff == 0 else backoff * 2
            backoff = min(backoff, max_backoff)

            logger.warning(f"Rate limited (attempt {attempt}/{max_attempts}), retrying in {backoff:.2f}s")


def list_all(
    fetch_page: Callable[..., Any],
    params: Optional[Dict[str, Any]] = None,
    policy: RetryPolicy = DEFAULT_POLICY,
) -> List[Any]:
    """
    Drain a paginated listing.

    fetch_page is called with params plus a cursor keyword (None for the
    first page) and must return an object with items and next_cursor. Pages
    are fetched until one has no next_cursor.

    Args:
        fetch_page: Page fetcher, e.g. S3Storage.list_page
        params: Keyword arguments passed to every call
        policy: Retry policy applied to each page

    Returns:
        Items of all pages, in page order
    """
    params = params or {}
    items = []
    cursor = None

    while True:
        page = with_retry(
            lambda: fetch_page(cursor=cursor, **params),
            max_attempts=policy.max_attempts,
            initial_backoff=policy.initial_backoff,
            max_backoff=policy.max_backoff,
        )
        items.extend(page.items)

        if not page.next_cursor:
            return items

        cursor = page.next_cursor
