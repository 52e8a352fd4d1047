"""Generic JSON-over-HTTP signal source."""

import logging
from typing import Any
from urllib.parse import quote

import httpx

from consensus_engine.errors import SourceFetchError
from consensus_engine.models.signal import RawSignal, SignalType

from .source import SignalSource

logger = logging.getLogger(__name__)

# Provider vocabularies collapse onto three votes
_SIGNAL_WORDS: dict[str, SignalType] = {
    "buy": SignalType.BUY,
    "strong buy": SignalType.BUY,
    "strong_buy": SignalType.BUY,
    "bullish": SignalType.BUY,
    "long": SignalType.BUY,
    "sell": SignalType.SELL,
    "strong sell": SignalType.SELL,
    "strong_sell": SignalType.SELL,
    "bearish": SignalType.SELL,
    "short": SignalType.SELL,
    "hold": SignalType.HOLD,
    "neutral": SignalType.HOLD,
}


def normalize_signal(value: Any) -> SignalType | None:
    """Map a provider's signal word onto BUY/HOLD/SELL, or None if unknown."""
    if not isinstance(value, str):
        return None
    return _SIGNAL_WORDS.get(value.strip().lower().replace("-", " "))


def _lookup(data: Any, path: str) -> Any:
    """Resolve a dotted path ("data.signal") inside decoded JSON."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


class HttpSignalSource(SignalSource):
    """Signal source backed by a JSON endpoint.

    The endpoint URL is a template; ``{symbol}`` is replaced by the
    URL-quoted symbol. The response is read through configurable field paths.

    Example:
        >>> source = HttpSignalSource(
        ...     "tradingview",
        ...     url="https://signals.example.com/v1/{symbol}",
        ... )
        >>> signal = await source.get_signal("AAPL")
    """

    def __init__(
        self,
        name: str,
        url: str,
        *,
        signal_field: str = "signal",
        confidence_field: str = "confidence",
        reason_field: str = "reason",
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ):
        super().__init__(name, **kwargs)
        self.url = url
        self.signal_field = signal_field
        self.confidence_field = confidence_field
        self.reason_field = reason_field
        self.headers = headers or {}
        self._client = client

    async def __aenter__(self) -> "HttpSignalSource":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_url(self, symbol: str) -> str:
        return self.url.format(symbol=quote(symbol, safe=""))

    async def _fetch_signal(self, symbol: str) -> RawSignal:
        if self._client is None:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                return await self._fetch_with_client(client, symbol)
        return await self._fetch_with_client(self._client, symbol)

    async def _fetch_with_client(self, client: httpx.AsyncClient, symbol: str) -> RawSignal:
        try:
            response = await client.get(self.build_url(symbol), headers=self.headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise SourceFetchError(self.name, symbol, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SourceFetchError(self.name, symbol, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise SourceFetchError(self.name, symbol, "invalid JSON") from e

        return self.parse_response(symbol, data)

    def parse_response(self, symbol: str, data: Any) -> RawSignal:
        """
        Convert a decoded response into a RawSignal.

        Raises:
            SourceFetchError: Signal word missing or unrecognised
        """
        raw_signal = _lookup(data, self.signal_field)
        signal_type = normalize_signal(raw_signal)
        if signal_type is None:
            raise SourceFetchError(self.name, symbol, f"unrecognised signal {raw_signal!r}")

        raw_confidence = _lookup(data, self.confidence_field)
        try:
            confidence = float(raw_confidence) if raw_confidence is not None else 50.0
        except (TypeError, ValueError):
            raise SourceFetchError(
                self.name, symbol, f"invalid confidence {raw_confidence!r}"
            ) from None
        confidence = max(0.0, min(100.0, confidence))

        reason = _lookup(data, self.reason_field)
        return RawSignal(
            source=self.name,
            symbol=symbol,
            signal=signal_type,
            confidence=confidence,
            reason=str(reason) if reason is not None else "",
        )
