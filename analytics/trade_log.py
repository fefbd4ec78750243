"""
loopbot Analytics: Trade Log Export

Writes the tracker's in-memory trade log to disk when a run is flushed.

Backends:
- CSV: Simple, portable, spreadsheet-compatible
- JSON Lines: One record per line, easy to grep and replay

Each export appends to a per-day file so several runs in one day share a
file. Key material never reaches a TradeRecord, so exports are safe to
share.
"""

import csv
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from core.models import TradeRecord

logger = logging.getLogger(__name__)

CSV_FIELDS = [
    'timestamp', 'type', 'wallet_address',
    'amount_in', 'amount_out', 'price',
    'tx_hash', 'block_number', 'action', 'reason',
]


class TradeLogExporter:
    """
    Export trade records to CSV or JSON Lines.

    Files are named trades_YYYYMMDD.csv / trades_YYYYMMDD.jsonl under
    export_dir (created on first use).
    """

    def __init__(self, export_dir: str, backend: str = "csv"):
        """
        Initialize exporter.

        Args:
            export_dir: Directory for trade-log files
            backend: "csv" or "jsonl"
        """
        if backend not in ("csv", "jsonl"):
            raise ValueError(f"Unsupported trade-log backend: {backend}")
        self.export_dir = Path(export_dir)
        self.backend = backend
        logger.info(f"TradeLogExporter initialized: backend={backend}, dir={export_dir}")

    def path_for(self, when: Optional[datetime] = None) -> Path:
        when = when or datetime.now(timezone.utc)
        suffix = "csv" if self.backend == "csv" else "jsonl"
        return self.export_dir / f"trades_{when.strftime('%Y%m%d')}.{suffix}"

    def export(self, records: Iterable[TradeRecord], when: Optional[datetime] = None) -> Optional[Path]:
        """
        Append records to today's file.

        Returns:
            Path written, or None if there was nothing to write
        """
        records = list(records)
        if not records:
            logger.info("Trade log empty; nothing to export")
            return None

        self.export_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(when)

        if self.backend == "csv":
            self._append_csv(path, records)
        else:
            self._append_json(path, records)

        logger.info(f"Exported {len(records)} trade record(s) to {path}")
        return path

    def _append_csv(self, path: Path, records: list) -> None:
        write_header = not path.exists()
        with open(path, 'a', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
            if write_header:
                writer.writeheader()
            for record in records:
                row = record.to_dict()
                writer.writerow({name: row.get(name) for name in CSV_FIELDS})

    def _append_json(self, path: Path, records: list) -> None:
        with open(path, 'a') as f:
            for record in records:
                f.write(json.dumps(record.to_dict()) + '\n')
