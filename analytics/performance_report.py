"""
loopbot Analytics: Run summaries

Human-readable reports printed to the operator and logged when a run is
flushed:
- Tracker summary: mode, trade counts, volume, loops, failures, success
  rate, and per-wallet pending tokens / last action
- Plan execution report: steps completed and failed, abort or
  cancellation reason
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from core.position_tracker import PositionTracker

logger = logging.getLogger(__name__)


@dataclass
class ExecutionReport:
    """Outcome of running one execution plan (or a market-making session)."""
    kind: str
    total_steps: int
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None
    cancelled: bool = False
    excluded_wallets: List[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.completed + self.failed

    @property
    def finished(self) -> bool:
        return not self.aborted and not self.cancelled


def _short(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}" if len(address) > 12 else address


def format_tracker_summary(tracker: PositionTracker) -> str:
    """Format tracker statistics and positions as a text block."""
    stats = tracker.get_statistics()

    text = "=" * 60 + "\n"
    text += "TRADING SUMMARY\n"
    text += "=" * 60 + "\n"
    text += f"Mode: {tracker.mode.value}\n"
    text += f"Buys: {stats['total_buys']}  Sells: {stats['total_sells']}\n"
    text += f"Volume (base currency spent): {stats['total_volume']:.6f}\n"
    text += f"Successful loops: {stats['successful_loops']}\n"
    text += f"Failed transactions: {stats['failed_transactions']}"
    if stats.get("skipped_actions"):
        text += f" ({stats['skipped_actions']} skipped, not submitted)"
    text += "\n"
    text += f"Success rate: {stats['success_rate']:.2f}%\n"
    text += f"Avg loop completion: {stats['avg_loop_completion']:.2f}%\n"

    positions = list(tracker.positions())
    if positions:
        text += "-" * 60 + "\n"
        for address, position in positions:
            line = (
                f"{_short(address)}: pending={position.pending_tokens:.6f} "
                f"last={position.last_action.value}"
            )
            if position.fixed_amount is not None:
                line += f" fixed={position.fixed_amount:.6f}"
            text += line + "\n"

    text += "=" * 60
    return text


def format_execution_report(report: ExecutionReport) -> str:
    """Format a plan execution report as a text block."""
    text = f"{report.kind.upper()} EXECUTION REPORT\n"
    text += f"Steps: {report.completed}/{report.total_steps} completed, {report.failed} failed"
    if report.skipped:
        text += f", {report.skipped} skipped"
    text += "\n"

    if report.aborted:
        text += f"⚠️ ABORTED: {report.abort_reason}\n"
    elif report.cancelled:
        text += "⏹ Cancelled by operator before all steps ran\n"
    else:
        text += "✅ All steps attempted\n"

    if report.excluded_wallets:
        text += f"Excluded wallets ({len(report.excluded_wallets)}):\n"
        for entry in report.excluded_wallets:
            text += f"  - {entry}\n"

    return text.rstrip("\n")
