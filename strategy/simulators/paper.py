import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

from strategy.models import LONG, SHORT, TradingSignal


__all__ = ["OutcomeSimulation", "OutcomeSimulator", "PaperOutcomeSimulator"]


@dataclass(frozen=True)
class OutcomeSimulation:
    exit_price: float
    exit_reason: str
    hold_seconds: float


class OutcomeSimulator(ABC):
    """Decides how a dry-run position ends without touching a venue."""

    @abstractmethod
    def simulate_outcome(self, signal: TradingSignal) -> OutcomeSimulation:
        pass

    @abstractmethod
    def exit_delay(self) -> float:
        """Seconds of wall-clock time before the simulated exit is applied."""


class PaperOutcomeSimulator(OutcomeSimulator):
    """Probability-weighted outcomes: better aligned momentum and confidence win more often."""

    MIN_WIN_PROBABILITY = 0.30
    MAX_WIN_PROBABILITY = 0.78

    def __init__(self, delay_range: Tuple[float, float] = (5.0, 15.0),
                 seed: Optional[int] = None, rng: Optional[random.Random] = None):
        self.delay_range = delay_range
        self._rng = rng or random.Random(seed)

    def exit_delay(self) -> float:
        low, high = self.delay_range
        return self._rng.uniform(low, high)

    def win_probability(self, signal: TradingSignal) -> float:
        change = signal.snapshot.quote.change_pct_24h
        aligned = (signal.direction == LONG and change > 0) or (signal.direction == SHORT and change < 0)
        momentum = abs(change)

        probability = 0.50
        if aligned:
            if momentum > 3.0:
                probability += 0.22
            elif momentum > 2.0:
                probability += 0.18
            elif momentum > 1.5:
                probability += 0.12
            else:
                probability += 0.06
        else:
            probability -= 0.15

        if signal.confidence >= 82:
            probability += 0.08
        elif signal.confidence >= 77:
            probability += 0.04

        return max(self.MIN_WIN_PROBABILITY, min(self.MAX_WIN_PROBABILITY, probability))

    def simulate_outcome(self, signal: TradingSignal) -> OutcomeSimulation:
        rng = self._rng
        entry = signal.entry_price
        hold_seconds = signal.hold_minutes * 60.0
        sign = 1 if signal.direction == LONG else -1

        if rng.random() < self.win_probability(signal):
            hold = hold_seconds * (0.3 + rng.random() * 0.5)
            if rng.random() < 0.75:
                return OutcomeSimulation(signal.take_profit_price, 'take-profit', hold)
            target_move = abs(signal.take_profit_price - entry) / entry
            partial = 0.55 + rng.random() * 0.35
            return OutcomeSimulation(entry * (1 + sign * target_move * partial), 'trailing-stop', hold)

        if rng.random() < 0.50:
            hold = hold_seconds * (0.1 + rng.random() * 0.25)
            return OutcomeSimulation(signal.stop_loss_price, 'stop-loss', hold)
        stop_move = abs(entry - signal.stop_loss_price) / entry
        loss = 0.35 + rng.random() * 0.45
        return OutcomeSimulation(entry * (1 - sign * stop_move * loss), 'time-exit', hold_seconds)
