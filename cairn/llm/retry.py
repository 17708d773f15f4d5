import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from cairn.constants import DEFAULT_MAX_RETRIES, RETRY_BASE_DELAY
from cairn.logging import get_logger

_logger = get_logger(__name__)


def _log_retry(retry_state) -> None:
    _logger.warning(
        "Provider request failed (attempt %d), retrying: %s",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
    )


def transport_retrying(
    max_attempts: int = DEFAULT_MAX_RETRIES,
    base_delay: float = RETRY_BASE_DELAY,
) -> AsyncRetrying:
    """Retry policy for transport-level failures only.

    HTTP status errors never reach this policy: a response with any status
    code is a successful transport and is handed back to the caller.
    """
    return AsyncRetrying(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=base_delay, exp_base=2),
        reraise=True,
        before_sleep=_log_retry,
    )


async def send_with_retry(
    client: httpx.AsyncClient,
    request: httpx.Request,
    max_attempts: int = DEFAULT_MAX_RETRIES,
    base_delay: float = RETRY_BASE_DELAY,
) -> httpx.Response:
    async for attempt in transport_retrying(max_attempts, base_delay):
        with attempt:
            return await client.send(request, stream=True)
    raise AssertionError("unreachable")
