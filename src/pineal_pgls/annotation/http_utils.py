"""
Retry handling for the remote annotation services.

BioMart is reached through a requests Session with a urllib3 ``Retry``
policy mounted on it. The g:Profiler client sends its own requests, so
g:Orth calls are retried at the call site by ``call_with_retries`` with
the same attempt budget and exponential backoff.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

USER_AGENT = "pineal-pgls/0.1"

# 429 is Ensembl's rate limit answer
RETRY_STATUSES = (429, 500, 502, 503, 504)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget shared by every annotation service call."""

    max_retries: int = 3
    backoff_factor: float = 1.0

    def wait_time(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failure (0-based)."""
        return self.backoff_factor * (2 ** attempt)

    def as_urllib3(self) -> Retry:
        return Retry(
            total=self.max_retries,
            backoff_factor=self.backoff_factor,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=("GET", "POST"),
            respect_retry_after_header=True,
        )


def create_session(policy: RetryPolicy = RetryPolicy()) -> requests.Session:
    """requests Session for BioMart with ``policy`` mounted on both schemes."""
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=policy.as_urllib3())
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": USER_AGENT})
    return session


def call_with_retries(
    func: Callable[..., T],
    *args,
    policy: RetryPolicy = RetryPolicy(),
    retry_on: Tuple[Type[BaseException], ...] = (requests.RequestException,),
    description: str = "request",
    **kwargs,
) -> T:
    """
    Call ``func`` until it returns, retrying errors listed in ``retry_on``.

    Args:
        func: Callable issuing one remote request
        policy: Attempt budget and backoff
        retry_on: Exception types worth another attempt
        description: Label for log messages

    Returns:
        Whatever ``func`` returns

    Raises:
        The last error once ``policy.max_retries`` retries are used up.
    """
    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except retry_on as e:
            if attempt >= policy.max_retries:
                logger.warning("%s failed after %d attempts: %s", description, attempt + 1, e)
                raise
            wait = policy.wait_time(attempt)
            logger.info(
                "%s failed (attempt %d/%d): %s. Retrying in %.1f seconds",
                description,
                attempt + 1,
                policy.max_retries + 1,
                e,
                wait,
            )
            time.sleep(wait)
            attempt += 1
