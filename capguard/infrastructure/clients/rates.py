"""Morpho Blue GraphQL client for current market borrow rates"""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from capguard.config import settings
from capguard.domain.calculator import apy_to_apr_bps
from capguard.domain.exceptions import RateSourceError
from capguard.infrastructure.observability.metrics import rate_source_failures_counter

logger = logging.getLogger(__name__)

MARKET_RATE_QUERY = """
query GetMarketRate($marketId: String!, $chainId: Int!) {
  marketByUniqueKey(uniqueKey: $marketId, chainId: $chainId) {
    loanAsset { symbol decimals }
    state { borrowApy }
  }
}
"""


class RateSource(Protocol):
    """Current effective annualized borrow rate for a market"""

    async def get_market_rate(self, market_id: str) -> int: ...


class MorphoRateClient:
    """Client for the Morpho Blue API; unavailable rates come back as 0 bps"""

    def __init__(
        self,
        base_url: str | None = None,
        chain_id: int | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
    ):
        self.base_url = base_url or settings.rate_source_url
        self.chain_id = chain_id or settings.chain_id
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = max_retries or settings.rate_source_max_retries
        self.backoff_base = settings.rate_source_backoff_base if backoff_base is None else backoff_base

    async def get_market_rate(self, market_id: str) -> int:
        """
        Current borrow APR for a market in basis points.

        Never raises: a missing market, bad payload or exhausted retries are
        logged as a warning and reported as 0.
        """
        try:
            state = await self._fetch_market_state(market_id)
        except RateSourceError as e:
            rate_source_failures_counter.inc()
            logger.warning("Rate unavailable, using 0 bps", extra={"market_id": market_id, "reason": str(e)})
            return 0

        apy = state.get("borrowApy") if state else None
        if not isinstance(apy, (int, float)) or isinstance(apy, bool) or apy <= 0:
            rate_source_failures_counter.inc()
            logger.warning("Invalid borrow APY, using 0 bps", extra={"market_id": market_id, "apy": apy})
            return 0

        rate_bps = apy_to_apr_bps(float(apy))
        logger.debug("Market rate fetched", extra={"market_id": market_id, "apy": apy, "rate_bps": rate_bps})
        return rate_bps

    async def _fetch_market_state(self, market_id: str) -> Optional[Dict[str, Any]]:
        """
        POST the market query with retry logic.

        Retry strategy:
        - Exponential backoff: base * 2^(attempt-1)
        - Retries on 5xx errors and network failures; 4xx fails immediately

        Raises:
            RateSourceError: On exhausted retries, client errors, or invalid payload
        """
        payload = {"query": MARKET_RATE_QUERY, "variables": {"marketId": market_id, "chainId": self.chain_id}}
        attempt = 0

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            while True:
                try:
                    response = await client.post(self.base_url, json=payload)
                    response.raise_for_status()
                    body = response.json()
                    break

                except httpx.HTTPStatusError as e:
                    if e.response.status_code < 500:
                        raise RateSourceError(f"Rate source error: {e.response.status_code}") from e
                    last_error: Exception = e

                except httpx.RequestError as e:
                    last_error = e

                except ValueError as e:
                    raise RateSourceError(f"Invalid JSON from rate source: {e}") from e

                attempt += 1
                if attempt >= self.max_retries:
                    raise RateSourceError(f"Rate source unavailable after {attempt} attempts: {last_error}")

                await asyncio.sleep(self.backoff_base * (2 ** (attempt - 1)))

        if not isinstance(body, dict):
            raise RateSourceError("Invalid rate payload: expected a JSON object")

        if body.get("errors"):
            raise RateSourceError(f"GraphQL errors: {body['errors']}")

        try:
            market = body["data"]["marketByUniqueKey"]
        except (KeyError, TypeError) as e:
            raise RateSourceError(f"Invalid rate payload: {e}") from e

        if not market:
            raise RateSourceError(f"No market data for {market_id}")

        return market.get("state")
