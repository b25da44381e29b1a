"""
Market and portfolio value fetchers.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import requests
import yfinance as yf

from alertflow.errors import UpstreamDataUnavailable
from alertflow.timeutil import utc_now

logger = logging.getLogger(__name__)

PORTFOLIO_METRICS = ("totalValue", "dayChange", "totalGainLoss")


@dataclass
class StockData:
    """Current stock data."""

    ticker: str
    current_price: float
    previous_close: float
    volume: int
    timestamp: datetime

    @property
    def daily_change_pct(self) -> float:
        """Calculate daily change percentage."""
        if self.previous_close == 0:
            return 0.0
        return ((self.current_price - self.previous_close) / self.previous_close) * 100


class ValueFetcher(ABC):
    """Supplies the current value a rule is evaluated against."""

    @abstractmethod
    def fetch(self, rule_type: str, subject: str, owner_id: Optional[str] = None) -> float:
        """
        Get the current value for a rule subject.

        Args:
            rule_type: Rule type (price, percentage, portfolio, volume, ...)
            subject: Ticker symbol, or metric name for portfolio rules
            owner_id: Portfolio owner, for portfolio rules

        Returns:
            Current numeric value

        Raises:
            UpstreamDataUnavailable: If no value can be obtained
        """
        pass


class StaticValueFetcher(ValueFetcher):
    """Serves values from a fixed table, keyed by (rule_type, subject)."""

    def __init__(self, values: Optional[dict[tuple[str, str], float]] = None):
        self.values = dict(values or {})

    def set(self, rule_type: str, subject: str, value: float) -> None:
        self.values[(rule_type, subject)] = value

    def fetch(self, rule_type: str, subject: str, owner_id: Optional[str] = None) -> float:
        try:
            return self.values[(rule_type, subject)]
        except KeyError:
            raise UpstreamDataUnavailable(rule_type, subject)


class StockDataFetcher:
    """Fetches stock data from Yahoo Finance."""

    def get_current_data(self, ticker: str) -> StockData:
        """
        Fetch current stock data.

        Args:
            ticker: Stock symbol (e.g., "AAPL")

        Returns:
            StockData with current price info

        Raises:
            ValueError: If symbol is invalid or data unavailable
        """
        stock = yf.Ticker(ticker)
        info = stock.info

        if not info or "regularMarketPrice" not in info and "previousClose" not in info:
            raise ValueError(f"Invalid symbol or no data available: {ticker}")

        # Use regularMarketPrice if available, otherwise fall back to previousClose
        current_price = info.get("regularMarketPrice")
        if current_price is None:
            current_price = info.get("previousClose")

        if current_price is None:
            raise ValueError(f"Invalid symbol or no data available: {ticker}")

        return StockData(
            ticker=ticker,
            current_price=current_price,
            previous_close=info.get("previousClose", current_price),
            volume=info.get("volume", 0),
            timestamp=utc_now(),
        )


class MarketValueFetcher(ValueFetcher):
    """
    Default fetcher.

    Quotes come from Yahoo Finance; portfolio metrics come from the portfolio
    service's ``/portfolio/<owner>/summary`` endpoint.
    """

    def __init__(
        self,
        portfolio_api_url: Optional[str] = None,
        timeout: float = 10.0,
        stock_fetcher: Optional[StockDataFetcher] = None,
    ):
        self.portfolio_api_url = portfolio_api_url.rstrip("/") if portfolio_api_url else None
        self.timeout = timeout
        self.stock_fetcher = stock_fetcher or StockDataFetcher()

    def fetch(self, rule_type: str, subject: str, owner_id: Optional[str] = None) -> float:
        if rule_type in ("price", "percentage", "volume"):
            return self._fetch_quote_value(rule_type, subject)
        if rule_type == "portfolio":
            return self._fetch_portfolio_value(subject, owner_id)
        raise UpstreamDataUnavailable(rule_type, subject, "unsupported rule type")

    def _fetch_quote_value(self, rule_type: str, symbol: str) -> float:
        if not symbol:
            raise UpstreamDataUnavailable(rule_type, symbol, "missing symbol")
        try:
            data = self.stock_fetcher.get_current_data(symbol)
        except ValueError as e:
            raise UpstreamDataUnavailable(rule_type, symbol, str(e))
        except Exception as e:
            logger.warning(f"Quote lookup failed for {symbol}: {e}")
            raise UpstreamDataUnavailable(rule_type, symbol, str(e))

        if rule_type == "price":
            return float(data.current_price)
        if rule_type == "percentage":
            return float(data.daily_change_pct)
        return float(data.volume)

    def _fetch_portfolio_value(self, metric: str, owner_id: Optional[str]) -> float:
        if metric not in PORTFOLIO_METRICS:
            raise UpstreamDataUnavailable("portfolio", metric, "unknown metric")
        if not self.portfolio_api_url or not owner_id:
            raise UpstreamDataUnavailable("portfolio", metric, "portfolio API not configured")

        summary = self.get_portfolio_summary(owner_id)

        if metric == "totalValue":
            value = summary.get("totalValue")
        elif metric == "dayChange":
            day_change = summary.get("dayChange") or {}
            value = day_change.get("percentage", 0) if isinstance(day_change, dict) else day_change
        else:
            value = summary.get("totalGainLoss", 0)

        if value is None:
            raise UpstreamDataUnavailable("portfolio", metric)
        return float(value)

    def get_portfolio_summary(self, owner_id: str) -> dict:
        """
        Fetch an owner's portfolio summary.

        Raises:
            UpstreamDataUnavailable: If the portfolio service cannot be reached
        """
        if not self.portfolio_api_url:
            raise UpstreamDataUnavailable("portfolio", owner_id, "portfolio API not configured")
        url = f"{self.portfolio_api_url}/portfolio/{owner_id}/summary"
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise UpstreamDataUnavailable("portfolio", owner_id, str(e))
        return body.get("data", body) if isinstance(body, dict) else {}
