"""
Data fetcher tests.
Tests for Yahoo Finance and portfolio API integration.
"""

from datetime import datetime
from unittest.mock import Mock, patch

import pytest
import requests

from alertflow.data.fetcher import (
    MarketValueFetcher,
    StaticValueFetcher,
    StockData,
    StockDataFetcher,
)
from alertflow.errors import UpstreamDataUnavailable


class TestStockData:
    """Test StockData model."""

    def test_daily_change_percentage(self):
        """Should calculate daily change percentage."""
        data = StockData(
            ticker="AAPL",
            current_price=175.50,
            previous_close=170.00,
            volume=50_000_000,
            timestamp=datetime.now(),
        )
        # (175.50 - 170.00) / 170.00 * 100 = 3.235%
        assert abs(data.daily_change_pct - 3.235) < 0.01

    def test_daily_change_negative(self):
        """Should calculate negative daily change."""
        data = StockData(
            ticker="AAPL",
            current_price=165.00,
            previous_close=175.00,
            volume=50_000_000,
            timestamp=datetime.now(),
        )
        assert abs(data.daily_change_pct - (-5.714)) < 0.01

    def test_zero_previous_close(self):
        """Should report no change when there is no previous close."""
        data = StockData("AAPL", 10.0, 0.0, 0, datetime.now())
        assert data.daily_change_pct == 0.0


class TestStockDataFetcher:
    """Test Yahoo Finance lookups."""

    @pytest.fixture
    def fetcher(self):
        return StockDataFetcher()

    @patch("yfinance.Ticker")
    def test_get_current_data(self, mock_ticker, fetcher, sample_stock_info):
        """Should fetch current stock data."""
        mock_ticker.return_value.info = sample_stock_info

        data = fetcher.get_current_data("AAPL")

        assert data.ticker == "AAPL"
        assert data.current_price == 175.50
        assert data.previous_close == 173.25
        assert data.volume == 50_000_000
        mock_ticker.assert_called_once_with("AAPL")

    @patch("yfinance.Ticker")
    def test_falls_back_to_previous_close(self, mock_ticker, fetcher):
        """Should use the previous close outside market hours."""
        mock_ticker.return_value.info = {"previousClose": 173.25}

        data = fetcher.get_current_data("AAPL")

        assert data.current_price == 173.25
        assert data.volume == 0

    @patch("yfinance.Ticker")
    def test_invalid_symbol(self, mock_ticker, fetcher):
        """Should raise ValueError for invalid symbols."""
        mock_ticker.return_value.info = {}

        with pytest.raises(ValueError):
            fetcher.get_current_data("INVALID123")


class TestMarketValueFetcher:
    """Test rule value resolution."""

    @pytest.fixture
    def stock_fetcher(self):
        stock_fetcher = Mock(spec=StockDataFetcher)
        stock_fetcher.get_current_data.return_value = StockData(
            ticker="AAPL",
            current_price=151.0,
            previous_close=145.0,
            volume=2_000_000,
            timestamp=datetime.now(),
        )
        return stock_fetcher

    @pytest.fixture
    def fetcher(self, stock_fetcher):
        return MarketValueFetcher(
            portfolio_api_url="http://portfolio.test/api/",
            stock_fetcher=stock_fetcher,
        )

    def test_price(self, fetcher):
        """Should return the current price for price rules."""
        assert fetcher.fetch("price", "AAPL") == 151.0

    def test_percentage(self, fetcher):
        """Should return the daily change for percentage rules."""
        assert fetcher.fetch("percentage", "AAPL") == pytest.approx(4.1379, abs=1e-3)

    def test_volume(self, fetcher):
        """Should return the traded volume for volume rules."""
        assert fetcher.fetch("volume", "AAPL") == 2_000_000.0

    def test_quote_failure(self, fetcher, stock_fetcher):
        """Should wrap quote failures in UpstreamDataUnavailable."""
        stock_fetcher.get_current_data.side_effect = ValueError("Invalid symbol")

        with pytest.raises(UpstreamDataUnavailable) as exc_info:
            fetcher.fetch("price", "NOPE")
        assert exc_info.value.subject == "NOPE"

    def test_network_failure(self, fetcher, stock_fetcher):
        """Should treat unexpected lookup errors as missing data."""
        stock_fetcher.get_current_data.side_effect = ConnectionError("reset")

        with pytest.raises(UpstreamDataUnavailable):
            fetcher.fetch("price", "AAPL")

    def test_missing_symbol(self, fetcher):
        """Should reject quote rules without a symbol."""
        with pytest.raises(UpstreamDataUnavailable):
            fetcher.fetch("price", None)

    def test_unsupported_type(self, fetcher):
        """Should report rule types it cannot value."""
        with pytest.raises(UpstreamDataUnavailable, match="unsupported"):
            fetcher.fetch("news", "AAPL")

    @patch("requests.get")
    def test_portfolio_metrics(self, mock_get, fetcher):
        """Should read portfolio metrics from the summary endpoint."""
        mock_get.return_value.json.return_value = {
            "data": {
                "totalValue": 125_000.5,
                "dayChange": {"amount": -1200, "percentage": -0.95},
                "totalGainLoss": 8_000,
            }
        }

        assert fetcher.fetch("portfolio", "totalValue", "user-1") == 125_000.5
        assert fetcher.fetch("portfolio", "dayChange", "user-1") == -0.95
        assert fetcher.fetch("portfolio", "totalGainLoss", "user-1") == 8_000.0

        url = mock_get.call_args[0][0]
        assert url == "http://portfolio.test/api/portfolio/user-1/summary"
        assert mock_get.call_args[1]["timeout"] == 10.0

    @patch("requests.get")
    def test_portfolio_unreachable(self, mock_get, fetcher):
        """Should raise UpstreamDataUnavailable when the service is down."""
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(UpstreamDataUnavailable):
            fetcher.fetch("portfolio", "totalValue", "user-1")

    @patch("requests.get")
    def test_portfolio_http_error(self, mock_get, fetcher):
        """Should raise UpstreamDataUnavailable on error responses."""
        mock_get.return_value.raise_for_status.side_effect = requests.exceptions.HTTPError("500")

        with pytest.raises(UpstreamDataUnavailable):
            fetcher.fetch("portfolio", "totalValue", "user-1")

    def test_portfolio_unknown_metric(self, fetcher):
        """Should reject unknown portfolio metrics."""
        with pytest.raises(UpstreamDataUnavailable, match="unknown metric"):
            fetcher.fetch("portfolio", "sharpeRatio", "user-1")

    def test_portfolio_not_configured(self, stock_fetcher):
        """Should report portfolio rules as unavailable without an API URL."""
        fetcher = MarketValueFetcher(stock_fetcher=stock_fetcher)

        with pytest.raises(UpstreamDataUnavailable, match="not configured"):
            fetcher.fetch("portfolio", "totalValue", "user-1")


class TestStaticValueFetcher:
    """Test the fixed-table fetcher."""

    def test_lookup(self):
        """Should serve configured values and raise for missing ones."""
        fetcher = StaticValueFetcher({("price", "AAPL"): 151.0})
        fetcher.set("volume", "AAPL", 10.0)

        assert fetcher.fetch("price", "AAPL") == 151.0
        assert fetcher.fetch("volume", "AAPL") == 10.0
        with pytest.raises(UpstreamDataUnavailable):
            fetcher.fetch("price", "MSFT")
