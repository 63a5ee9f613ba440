import asyncio
import sys

import pytest

sys.path.insert(0, '.')

from config.settings import MarketDataSettings
from ingest.market_client import MarketDataClient, MarketDataError


def _client(payload):
    client = MarketDataClient(MarketDataSettings(source='rest'))

    async def fake_get(path, params=None):
        return payload

    client._get = fake_get
    return client


def test_malformed_rows_are_skipped():
    payload = {'markets': [
        {'symbol': 'BTC-USD', 'lastPrice': '89706', 'priceChangePercent24h': -0.48,
         'volume24h': 53_940_000, 'fundingRate': 0.000016, 'openInterest': 53_840_000},
        'ETH-USD',
        None,
        ['SOL-USD', 137.08],
        {'symbol': 'NOPRICE'},
        {'instrument': 'SUI-USD', 'price': 1.77, 'max_leverage': 10},
    ]}

    quotes = asyncio.run(_client(payload).fetch_instruments())

    assert [q.instrument for q in quotes] == ['BTC-USD', 'SUI-USD']
    assert quotes[0].price == 89706.0
    assert quotes[0].max_leverage == 20
    assert quotes[1].max_leverage == 10


def test_bare_list_payload_is_accepted():
    quotes = asyncio.run(_client([{'symbol': 'X', 'price': 1}]).fetch_instruments())
    assert [q.instrument for q in quotes] == ['X']


def test_unexpected_payload_raises():
    with pytest.raises(MarketDataError):
        asyncio.run(_client({'markets': 'down'}).fetch_instruments())
