"""
Monthly spend persistence.

Stores cumulative USD spend keyed by calendar month. Two backends are
provided: an in-memory store for process-lifetime tracking and a JSON file
store that survives restarts.
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)


class SpendStore(Protocol):
    """Load and save cumulative spend per month key."""

    def load(self, month_key: str) -> Optional[float]:
        ...

    def save(self, month_key: str, amount: float) -> None:
        ...

    def load_all(self) -> Dict[str, float]:
        ...


def _as_amount(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value:  # NaN
        return None
    return float(value)


class InMemorySpendStore:
    """Spend store that lives only as long as the process."""

    def __init__(self):
        self._ledger: Dict[str, float] = {}
        self._lock = threading.Lock()

    def load(self, month_key: str) -> Optional[float]:
        with self._lock:
            return self._ledger.get(month_key)

    def save(self, month_key: str, amount: float) -> None:
        with self._lock:
            self._ledger[month_key] = amount

    def load_all(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._ledger)


class FileSpendStore:
    """Spend store backed by a single JSON object on disk.

    The file maps month keys to spend, e.g. ``{"2025-09": 12.345678}``.
    Every save rewrites the whole ledger atomically: the data goes to a
    temporary file in the same directory which is then renamed over the
    destination.

    Reads never raise. A missing or corrupt file is reported as a warning
    and treated as an empty ledger.
    """

    def __init__(self, path: str):
        """Initialize the store.

        Args:
            path: Location of the JSON ledger file
        """
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read_all(self) -> Dict[str, float]:
        try:
            if not self.path.exists():
                return {}
            raw = self.path.read_text(encoding="utf-8")
            data = json.loads(raw or "{}")
        except (OSError, ValueError) as e:
            logger.warning("budget_file_unreadable", file=str(self.path), error=str(e))
            return {}
        if not isinstance(data, dict):
            logger.warning(
                "budget_file_unreadable",
                file=str(self.path),
                error=f"expected a JSON object, got {type(data).__name__}",
            )
            return {}

        ledger = {}
        for key, value in data.items():
            amount = _as_amount(value)
            if amount is not None:
                ledger[str(key)] = amount
        return ledger

    def _write_all(self, ledger: Dict[str, float]) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(directory)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(ledger, f, indent=2, sort_keys=True)
            try:
                os.replace(tmp_name, self.path)
            except (FileExistsError, PermissionError):
                # Windows cannot rename over a file that is held open
                if os.name != "nt":
                    raise
                self.path.unlink(missing_ok=True)
                os.rename(tmp_name, self.path)
        finally:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)

    def load(self, month_key: str) -> Optional[float]:
        """Get the recorded spend for a month.

        Args:
            month_key: Month in ``YYYY-MM`` form

        Returns:
            Spend in USD, or None if nothing was recorded
        """
        with self._lock:
            return self._read_all().get(month_key)

    def save(self, month_key: str, amount: float) -> None:
        """Record the spend for a month, keeping other months intact.

        Raises:
            OSError: If the ledger cannot be written
        """
        with self._lock:
            ledger = self._read_all()
            ledger[month_key] = amount
            self._write_all(ledger)

    def load_all(self) -> Dict[str, float]:
        with self._lock:
            return self._read_all()
