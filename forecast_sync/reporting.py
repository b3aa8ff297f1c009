"""
Error reporting.

Failures that need a human (rejected writes, malformed keys) are written
back onto the affected record's error property so they are visible where
people work. Transient store failures are only logged: they are retried
implicitly by the next pass.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from forecast_sync.errors import is_actionable
from forecast_sync.store.base import Collection, RecordStore

logger = logging.getLogger(__name__)


# Object type -> (collection, error property)
ERROR_TARGETS: Dict[str, Tuple[Collection, str]] = {
    "item": (Collection.ITEMS, "billing_error"),
    "forecast": (Collection.FORECASTS, "forecast_error"),
    "parent": (Collection.PARENTS, "billing_error"),
}


class ErrorReporter(ABC):
    """Collaborator receiving actionable failures."""

    @abstractmethod
    async def report(self, object_type: str, object_id: Optional[str], message: str) -> None:
        pass

    async def flush(self) -> None:
        return None


@dataclass
class _PendingLines:
    lines: List[str] = field(default_factory=list)
    last_message: Optional[str] = None


def compact_lines(lines: List[str], max_lines: int, max_chars: int) -> str:
    """Keep the newest lines within both limits, never cutting a line in half."""
    kept = [line for line in lines if line][-max_lines:]
    joined = "\n".join(kept)
    if len(joined) > max_chars:
        joined = joined[len(joined) - max_chars:]
        newline = joined.find("\n")
        if newline >= 0:
            joined = joined[newline + 1:]
    return joined


class StoreErrorReporter(ErrorReporter):
    """
    Appends timestamped error lines to the affected record.

    Lines are queued per object and written on ``flush()``. Consecutive
    identical messages for the same object are collapsed. The stored
    value keeps only the newest lines within the configured limits.
    """

    def __init__(self, store: RecordStore, max_lines: int = 30, max_chars: int = 6500):
        self.store = store
        self.max_lines = max_lines
        self.max_chars = max_chars
        self._queue: Dict[Tuple[str, str], _PendingLines] = {}

    async def report(self, object_type: str, object_id: Optional[str], message: str) -> None:
        if object_type not in ERROR_TARGETS or not object_id:
            logger.error(f"Unroutable error report ({object_type}/{object_id}): {message}")
            return

        pending = self._queue.setdefault((object_type, str(object_id)), _PendingLines())
        if pending.last_message == message:
            return
        stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        pending.lines.append(f"{stamp} ERROR: {message}")
        pending.last_message = message

    async def flush(self) -> None:
        queued, self._queue = self._queue, {}
        for (object_type, object_id), pending in queued.items():
            if not pending.lines:
                continue
            collection, prop = ERROR_TARGETS[object_type]
            try:
                record = await self.store.get(collection, object_id)
                if record is None:
                    logger.warning(f"Cannot report errors on missing {object_type} {object_id}")
                    continue
                current = record.text(prop)
                existing = current.split("\n") if current else []
                merged = compact_lines(existing + pending.lines, self.max_lines, self.max_chars)
                await self.store.update(collection, object_id, {prop: merged})
            except Exception as e:
                # Reporting must never take a pass down with it
                logger.error(f"Failed to write error report for {object_type} {object_id}: {e}")


async def report_if_actionable(
    reporter: Optional[ErrorReporter],
    err: BaseException,
    object_type: str,
    object_id: Optional[str],
    context: str = "",
) -> bool:
    """
    Escalate an error to the reporter when it is actionable.

    Returns True when the error was reported.
    """
    if reporter is None or not is_actionable(err):
        return False
    message = f"{context}: {err}" if context else str(err)
    await reporter.report(object_type, object_id, message)
    return True
