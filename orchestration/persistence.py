import csv
import json
import logging
import time
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from strategy.models import ClosedTrade


logger = logging.getLogger(__name__)


class TradeStore:
    """Append-only JSON record of closed trades with CSV and summary exports."""

    TRADES_FILE = 'trades.json'
    CSV_FILE = 'trades.csv'
    SUMMARY_FILE = 'summary.json'

    def __init__(self, results_dir: Union[str, Path]):
        self.results_dir = Path(results_dir)
        self.trades_path = self.results_dir / self.TRADES_FILE
        self.results_dir.mkdir(parents=True, exist_ok=True)

    def save_trade(self, trade: ClosedTrade) -> None:
        trades = self._read_raw(quarantine=True)
        trades.append(trade.to_dict())
        self._write_json(self.trades_path, trades)
        logger.debug("Trade saved: %s", trade.trade_id)

    def load_trades(self) -> List[ClosedTrade]:
        trades: List[ClosedTrade] = []
        for row in self._read_raw():
            try:
                trades.append(ClosedTrade.from_dict(row))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable trade record: %s", exc)
        return trades

    def export_to_csv(self, output_path: Optional[Union[str, Path]] = None) -> Path:
        csv_path = Path(output_path) if output_path else self.results_dir / self.CSV_FILE
        headers = [f.name for f in fields(ClosedTrade)]
        with csv_path.open('w', newline='') as fh:
            writer = csv.DictWriter(fh, fieldnames=headers)
            writer.writeheader()
            for trade in self.load_trades():
                writer.writerow(trade.to_dict())
        logger.info("Trades exported to %s", csv_path)
        return csv_path

    def export_summary(self, summary: Dict[str, Any]) -> Path:
        path = self.results_dir / self.SUMMARY_FILE
        self._write_json(path, summary)
        return path

    def _read_raw(self, quarantine: bool = False) -> List[Dict[str, Any]]:
        """Return the stored rows; ``quarantine`` moves an unreadable file aside first."""
        if not self.trades_path.exists():
            return []
        try:
            data = json.loads(self.trades_path.read_text())
        except ValueError as exc:
            logger.error("Trade file %s is corrupt: %s", self.trades_path, exc)
            data = None
        if isinstance(data, list):
            return data
        if data is not None:
            logger.error("Trade file %s does not hold a list of trades", self.trades_path)
        if quarantine:
            self._quarantine()
        return []

    def _quarantine(self) -> Path:
        target = self.trades_path.with_name(f"{self.TRADES_FILE}.corrupt-{int(time.time() * 1000)}")
        self.trades_path.replace(target)
        logger.warning("Moved unreadable trade file to %s", target)
        return target

    @staticmethod
    def _write_json(path: Path, payload: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + '.tmp')
        tmp.write_text(json.dumps(payload, indent=2))
        tmp.replace(path)
