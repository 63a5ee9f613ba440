from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple
import time


LONG = 'long'
SHORT = 'short'

URGENCY_IMMEDIATE = 'immediate'
URGENCY_SOON = 'soon'
URGENCY_WAIT = 'wait'
URGENCY_SKIP = 'skip'

TREND_INCREASING = 'increasing'
TREND_STABLE = 'stable'
TREND_DECREASING = 'decreasing'


class PositionState(Enum):
    OPEN = "open"
    CLOSED = "closed"


def _pick(payload: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return default


@dataclass(frozen=True)
class InstrumentQuote:
    """One instrument row as reported by the market-data source."""

    instrument: str
    price: float
    change_pct_24h: float
    volume_24h: float
    funding_rate: float
    open_interest: float
    max_leverage: int = 20

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'InstrumentQuote':
        if not isinstance(payload, Mapping):
            raise TypeError(f"Market row is not an object: {payload!r}")
        instrument = _pick(payload, 'instrument', 'symbol')
        price = _pick(payload, 'price', 'lastPrice', 'markPrice')
        if not instrument or price is None:
            raise ValueError(f"Market payload missing symbol/price: {payload!r}")
        return cls(
            instrument=str(instrument),
            price=float(price),
            change_pct_24h=float(_pick(payload, 'change_pct_24h', 'priceChangePercent24h', default=0.0)),
            volume_24h=float(_pick(payload, 'volume_24h', 'volume24h', default=0.0)),
            funding_rate=float(_pick(payload, 'funding_rate', 'fundingRate', default=0.0)),
            open_interest=float(_pick(payload, 'open_interest', 'openInterest', default=0.0)),
            max_leverage=int(_pick(payload, 'max_leverage', 'leverage', default=20)),
        )


@dataclass(frozen=True)
class MomentumSignal:
    direction: str
    strength: float
    acceleration: str


@dataclass(frozen=True)
class FundingSignal:
    bias: str
    extremity: str
    opportunity: str


@dataclass(frozen=True)
class VolumeSignal:
    tier: str
    trend: str
    conviction: float


@dataclass(frozen=True)
class LiquiditySignal:
    score: float
    slippage: str
    tradeable: bool


@dataclass(frozen=True)
class VolatilitySignal:
    regime: str
    implied_move: float
    optimal_hold_minutes: int


@dataclass(frozen=True)
class CompositeSignal:
    label: str
    score: float
    confidence: float
    urgency: str


@dataclass(frozen=True)
class MarketSignals:
    momentum: MomentumSignal
    funding: FundingSignal
    volume: VolumeSignal
    liquidity: LiquiditySignal
    volatility: VolatilitySignal
    composite: CompositeSignal


@dataclass(frozen=True)
class MarketSnapshot:
    quote: InstrumentQuote
    timestamp: float
    signals: MarketSignals
    price_history: Tuple[float, ...] = ()
    volatility_trend: str = TREND_STABLE
    momentum_shift: bool = False

    @property
    def instrument(self) -> str:
        return self.quote.instrument

    @property
    def price(self) -> float:
        return self.quote.price

    @property
    def score(self) -> float:
        return self.signals.composite.score

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instrument': self.instrument,
            'price': self.price,
            'timestamp': self.timestamp,
            'change_pct_24h': self.quote.change_pct_24h,
            'funding_rate': self.quote.funding_rate,
            'score': self.score,
            'confidence': self.signals.composite.confidence,
            'label': self.signals.composite.label,
            'volatility_regime': self.signals.volatility.regime,
            'volatility_trend': self.volatility_trend,
            'momentum_shift': self.momentum_shift,
        }


@dataclass
class TradingSignal:
    signal_id: str
    instrument: str
    direction: str
    confidence: float
    urgency: str
    entry_price: float
    take_profit_price: float
    stop_loss_price: float
    position_size: float
    leverage: int
    hold_minutes: int
    rationale: str
    snapshot: MarketSnapshot
    source: str = 'fallback'
    created_at: float = field(default_factory=time.time)
    expires_at: float = 0.0

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created_at

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'signal_id': self.signal_id,
            'instrument': self.instrument,
            'direction': self.direction,
            'confidence': self.confidence,
            'urgency': self.urgency,
            'entry_price': self.entry_price,
            'take_profit_price': self.take_profit_price,
            'stop_loss_price': self.stop_loss_price,
            'position_size': self.position_size,
            'leverage': self.leverage,
            'hold_minutes': self.hold_minutes,
            'rationale': self.rationale,
            'source': self.source,
            'created_at': self.created_at,
            'expires_at': self.expires_at,
        }


@dataclass
class OpenPosition:
    position_id: str
    instrument: str
    side: str
    entry_price: float
    current_price: float
    size: float
    leverage: int
    take_profit_price: float
    stop_loss_price: float
    max_hold_seconds: float
    snapshot: MarketSnapshot
    confidence: float = 0.0
    entered_at: float = field(default_factory=time.time)
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    trailing_stop_price: Optional[float] = None
    state: PositionState = PositionState.OPEN
    exit_reason: Optional[str] = None

    def pnl_at(self, price: float) -> float:
        """Leverage-adjusted return fraction if the position were marked at ``price``."""
        if self.side == LONG:
            move = (price - self.entry_price) / self.entry_price
        else:
            move = (self.entry_price - price) / self.entry_price
        return move * self.leverage

    def mark(self, price: float) -> None:
        self.current_price = price
        self.unrealized_pnl = self.pnl_at(price)
        self.unrealized_pnl_pct = self.unrealized_pnl * 100

    def elapsed(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.entered_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'position_id': self.position_id,
            'instrument': self.instrument,
            'side': self.side,
            'entry_price': self.entry_price,
            'current_price': self.current_price,
            'size': self.size,
            'leverage': self.leverage,
            'unrealized_pnl': self.unrealized_pnl,
            'unrealized_pnl_pct': self.unrealized_pnl_pct,
            'take_profit_price': self.take_profit_price,
            'stop_loss_price': self.stop_loss_price,
            'trailing_stop_price': self.trailing_stop_price,
            'entered_at': self.entered_at,
            'max_hold_seconds': self.max_hold_seconds,
            'state': self.state.value,
        }


@dataclass(frozen=True)
class ClosedTrade:
    trade_id: str
    instrument: str
    side: str
    entry_price: float
    exit_price: float
    size: float
    confidence: float
    expected_return: float
    risk_score: float
    entered_at: float
    exit_reason: str
    pnl: float
    resolved_at: float
    rationale: str = ''

    @property
    def is_win(self) -> bool:
        return self.pnl > 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ClosedTrade':
        return cls(
            trade_id=str(data['trade_id']),
            instrument=str(data['instrument']),
            side=str(data['side']),
            entry_price=float(data['entry_price']),
            exit_price=float(data['exit_price']),
            size=float(data.get('size', 0.0)),
            confidence=float(data.get('confidence', 0.0)),
            expected_return=float(data.get('expected_return', 0.0)),
            risk_score=float(data.get('risk_score', 0.0)),
            entered_at=float(data.get('entered_at', 0.0)),
            exit_reason=str(data.get('exit_reason', '')),
            pnl=float(data.get('pnl', 0.0)),
            resolved_at=float(data.get('resolved_at', 0.0)),
            rationale=str(data.get('rationale', '')),
        )
