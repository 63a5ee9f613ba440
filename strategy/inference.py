"""Trade-idea synthesis: an LLM chat-completions client plus the momentum fallback."""
import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import aiohttp

from api.metrics import metrics
from config.settings import InferenceSettings
from strategy.models import (
    LONG,
    SHORT,
    URGENCY_IMMEDIATE,
    URGENCY_SOON,
    URGENCY_WAIT,
    InstrumentQuote,
    MarketSignals,
)


logger = logging.getLogger(__name__)

_JSON_BLOCK = re.compile(r'\{[\s\S]*\}')

SYSTEM_PROMPT = (
    "You are an expert crypto trader specializing in perpetual futures. "
    "Focus on high probability setups only. Be selective and patient. "
    "Consider market dynamics and timing carefully."
)


class InferenceError(Exception):
    pass


@dataclass(frozen=True)
class InferenceContext:
    quote: InstrumentQuote
    signals: MarketSignals
    recent_prices: Sequence[float]
    volatility_trend: str
    momentum_shift: bool
    total_capital: float


@dataclass(frozen=True)
class InferenceResult:
    direction: str
    confidence: float
    urgency: str
    take_profit_pct: float
    stop_loss_pct: float
    hold_minutes: float
    rationale: str


class InferenceClient(ABC):
    @abstractmethod
    async def analyze(self, context: InferenceContext) -> InferenceResult:
        pass

    async def close(self) -> None:
        return None


def build_prompt(context: InferenceContext) -> str:
    quote = context.quote
    if context.recent_prices:
        history = "Recent prices: " + " -> ".join(f"{p:.2f}" for p in list(context.recent_prices)[-5:])
    else:
        history = "No price history"
    return f"""PERPETUAL FUTURES ANALYSIS - {quote.instrument}

CURRENT STATE:
  Price: {quote.price:,.4f}
  24h Change: {quote.change_pct_24h:.2f}%
  Funding Rate: {quote.funding_rate * 100:.4f}%
  Volume: ${quote.volume_24h / 1_000_000:.2f}M

MARKET DYNAMICS:
  {history}
  Volatility Trend: {context.volatility_trend.upper()}
  Momentum Shift Detected: {'YES' if context.momentum_shift else 'NO'}
  Composite: {context.signals.composite.label} ({context.signals.composite.score:.1f})

CAPITAL: {context.total_capital:g} (small account - need high probability)

Respond with JSON only:
{{
  "action": "LONG" | "SHORT",
  "confidence": 70-95,
  "urgency": "IMMEDIATE" | "SOON" | "WAIT",
  "takeProfitPercent": 2.0-5.0,
  "stopLossPercent": 1.0-2.5,
  "reasoning": "2-3 sentence analysis",
  "optimalHoldMinutes": 15-180
}}

Consider:
1. Is momentum shifting? If yes, be more cautious
2. Volatility increasing? Wider stops, shorter hold
3. Volatility decreasing? Tighter stops, longer hold
4. Strong signal? Higher confidence, can hold longer"""


def parse_result(content: str) -> InferenceResult:
    """Pull the first JSON object out of a completion and validate its fields."""
    match = _JSON_BLOCK.search(content or '')
    if not match:
        raise InferenceError("completion did not contain a JSON object")
    try:
        data: Dict[str, Any] = json.loads(match.group(0))
    except ValueError as exc:
        raise InferenceError(f"invalid JSON in completion: {exc}") from exc

    action = str(data.get('action', '')).lower()
    if action not in (LONG, SHORT):
        raise InferenceError(f"unknown action {data.get('action')!r}")
    urgency = str(data.get('urgency') or URGENCY_SOON).lower()
    if urgency not in (URGENCY_IMMEDIATE, URGENCY_SOON, URGENCY_WAIT):
        urgency = URGENCY_SOON
    try:
        return InferenceResult(
            direction=action,
            confidence=float(data['confidence']),
            urgency=urgency,
            take_profit_pct=float(data['takeProfitPercent']),
            stop_loss_pct=float(data['stopLossPercent']),
            hold_minutes=float(data.get('optimalHoldMinutes', 60)),
            rationale=str(data.get('reasoning') or 'Signal detected'),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise InferenceError(f"malformed inference payload: {exc}") from exc


class GroqInferenceClient(InferenceClient):
    """Chat-completions client for Groq's OpenAI-compatible endpoint."""

    def __init__(self, settings: InferenceSettings):
        self.settings = settings
        self.timeout = aiohttp.ClientTimeout(total=settings.timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self) -> None:
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def analyze(self, context: InferenceContext) -> InferenceResult:
        payload = {
            'model': self.settings.model,
            'messages': [
                {'role': 'system', 'content': SYSTEM_PROMPT},
                {'role': 'user', 'content': build_prompt(context)},
            ],
            'temperature': self.settings.temperature,
            'max_tokens': self.settings.max_tokens,
        }
        headers = {
            'Authorization': f'Bearer {self.settings.api_key}',
            'Content-Type': 'application/json',
        }
        session = await self._get_session()
        started = time.monotonic()
        try:
            async with session.post(self.settings.api_url, json=payload, headers=headers) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise InferenceError(f"inference HTTP {resp.status}: {text[:200]}")
        except aiohttp.ClientError as exc:
            raise InferenceError(f"inference request failed: {exc}") from exc
        finally:
            metrics.record_inference_latency(time.monotonic() - started)

        try:
            body = json.loads(text)
            content = body['choices'][0]['message']['content']
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise InferenceError(f"unexpected completion body: {exc}") from exc
        return parse_result(content)


def momentum_fallback(quote: InstrumentQuote, signals: MarketSignals) -> Optional[InferenceResult]:
    """Deterministic trade idea from the 24h move alone; ``None`` when it is too small."""
    change = quote.change_pct_24h
    abs_change = abs(change)
    if abs_change < 1.5:
        return None

    direction = LONG if change > 0 else SHORT

    confidence = 70.0
    if abs_change > 3.0:
        confidence = 82.0
    elif abs_change > 2.5:
        confidence = 78.0
    elif abs_change > 2.0:
        confidence = 75.0
    elif abs_change > 1.5:
        confidence = 72.0

    if abs_change > 3.0:
        urgency = URGENCY_IMMEDIATE
    elif abs_change < 2.0:
        urgency = URGENCY_WAIT
    else:
        urgency = URGENCY_SOON

    if abs_change > 3:
        take_profit, stop_loss, hold = 3.5, 2.0, 60
    elif abs_change > 2:
        take_profit, stop_loss, hold = 3.0, 1.8, 45
    else:
        take_profit, stop_loss, hold = 2.5, 1.5, 30

    return InferenceResult(
        direction=direction,
        confidence=confidence,
        urgency=urgency,
        take_profit_pct=take_profit,
        stop_loss_pct=stop_loss,
        hold_minutes=hold,
        rationale=f"{direction.upper()} signal: {change:+.1f}% momentum with {signals.composite.label} composite",
    )
