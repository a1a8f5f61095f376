# oracle/prices.py
from __future__ import annotations

from decimal import Decimal
from typing import Dict, Optional

import httpx

from services.api.logging_config import get_logger
from services.api.retry import RetryError, call_with_retry
from services.oracle.errors import PriceUnavailableError

logger = get_logger("prices")

COINGECKO_IDS: Dict[str, str] = {
    "SOL": "solana",
    "ZEC": "zcash",
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "USDC": "usd-coin",
    "USDT": "tether",
}


class CoinGeckoPriceSource:
    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        timeout: float = 10.0,
        max_retries: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self._client = client

    async def get_price(self, token: str, currency: str = "USD") -> Decimal:
        coin = COINGECKO_IDS.get(token.upper(), token.lower())
        fiat = currency.lower()
        params = {"ids": coin, "vs_currencies": fiat}

        async def once() -> Decimal:
            url = f"{self.base_url}/simple/price"
            if self._client is not None:
                r = await self._client.get(url, params=params)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    r = await client.get(url, params=params)
            r.raise_for_status()
            price = (r.json().get(coin) or {}).get(fiat)
            if not price or float(price) <= 0:
                raise PriceUnavailableError(f"no {fiat} price for {coin}")
            return Decimal(str(price))

        try:
            price = await call_with_retry(
                once, max_retries=self.max_retries, timeout=self.timeout,
                description=f"price {token}/{currency}", base_delay=2.0,
            )
        except RetryError as e:
            raise PriceUnavailableError(f"Failed to fetch {token} price: {e}") from e
        logger.info(f"{token}/{currency} = {price}")
        return price
