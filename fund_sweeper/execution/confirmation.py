from __future__ import annotations

import asyncio
import random

from loguru import logger

from fund_sweeper.chains.gateway import ConfirmationResult, LedgerGateway
from fund_sweeper.errors import ConfirmationTimeoutError


def backoff_delay(attempt: int, backoff: float, jitter: float = 0.0) -> float:
    """Delay after the given 1-based failed attempt; 0 when backoff is disabled."""
    if backoff <= 0:
        return 0.0
    delay = backoff * (2 ** (attempt - 1))
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return delay


async def confirm_with_retries(
    gateway: LedgerGateway,
    signature: str,
    max_attempts: int = 3,
    timeout: float = 60.0,
    commitment: str = "confirmed",
    backoff: float = 0.0,
    jitter: float = 0.0,
) -> ConfirmationResult:
    """Poll the gateway until it answers for `signature`.

    An answer (confirmed or failed on chain) is returned as is. Transport
    errors and per-attempt timeouts are retried until `max_attempts` polls
    have failed, then ConfirmationTimeoutError is raised from the last error.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    last_error: BaseException | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await asyncio.wait_for(
                gateway.poll_confirmation(signature, commitment, timeout), timeout=timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            if attempt == max_attempts:
                break
            logger.warning(
                "Retrying confirmation of {}, attempt {} failed: {}", signature, attempt, str(e) or type(e).__name__
            )
            delay = backoff_delay(attempt, backoff, jitter)
            if delay:
                await asyncio.sleep(delay)
    raise ConfirmationTimeoutError(signature, max_attempts) from last_error
