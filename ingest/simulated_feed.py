import random
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from ingest.market_client import MarketDataSource
from strategy.models import InstrumentQuote


SEED_INSTRUMENTS = (
    InstrumentQuote('BTC-USD', 89706.0, -0.48, 53_940_000, 0.000016, 53_840_000, 20),
    InstrumentQuote('ETH-USD', 3070.2, -1.42, 34_090_000, 0.000017, 34_730_000, 20),
    InstrumentQuote('SOL-USD', 137.08, 1.43, 6_360_000, 0.000017, 3_940_000, 10),
    InstrumentQuote('HYPE-USD', 25.52, -3.41, 2_700_000, 0.0005, 2_330_000, 10),
    InstrumentQuote('ZEC-USD', 432.23, 2.38, 2_340_000, 0.000016, 664_740, 5),
    InstrumentQuote('SUI-USD', 1.7726, -1.93, 981_200, 0.0005, 501_150, 10),
    InstrumentQuote('XRP-USD', 2.0756, -1.69, 784_520, 0.000017, 559_250, 10),
    InstrumentQuote('ENA-USD', 0.22881, -1.66, 740_000, 0.000016, 784_510, 5),
    InstrumentQuote('AAVE-USD', 162.83, -1.09, 222_390, 0.000017, 863_090, 5),
)


class SimulatedMarketFeed(MarketDataSource):
    """Offline market source: a seeded random walk over a fixed instrument list.

    Prices move a few basis points per fetch and the 24h change drifts with
    them, so momentum flips and volatility regimes show up over a session.
    """

    def __init__(
        self,
        instruments: Iterable[InstrumentQuote] = SEED_INSTRUMENTS,
        seed: Optional[int] = None,
        price_sigma: float = 0.002,
        change_sigma: float = 0.25,
    ):
        self._rng = random.Random(seed)
        self._quotes: Dict[str, InstrumentQuote] = {q.instrument: q for q in instruments}
        self.price_sigma = price_sigma
        self.change_sigma = change_sigma
        self.fetch_count = 0

    async def fetch_instruments(self) -> List[InstrumentQuote]:
        self.fetch_count += 1
        updated: List[InstrumentQuote] = []
        for name, quote in self._quotes.items():
            step = self._rng.gauss(0, self.price_sigma)
            change = quote.change_pct_24h + step * 100 * 0.5 + self._rng.gauss(0, self.change_sigma)
            change = max(-15.0, min(15.0, change))
            volume = max(0.0, quote.volume_24h * (1 + self._rng.gauss(0, 0.01)))
            funding = quote.funding_rate + self._rng.gauss(0, 0.00002)
            nxt = replace(
                quote,
                price=max(quote.price * (1 + step), 1e-9),
                change_pct_24h=change,
                volume_24h=volume,
                funding_rate=funding,
            )
            self._quotes[name] = nxt
            updated.append(nxt)
        return updated
