"""Thread-safe DataFrame history store with file-backed persistence.

This module provides:
- HistoryStore: append-only in-memory DataFrame of timestamped samples,
  loaded from and periodically flushed to history_<name>.csv

Design notes:
- One store per history (energy, voltage), each with its own schema
- Auto-flush rewrites the whole CSV; the file is the store's durable copy
- Samples arrive at most once per poll tick, so rows are appended one by one
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Event, RLock, Thread
from typing import Any, Mapping, Optional

import pandas as pd

from data_store.schemas import sample_to_row

logger = logging.getLogger(__name__)


def safe_name(name: str) -> str:
    """File-name-safe version of a display name."""
    return re.sub(r"[^a-z0-9_-]", "_", name, flags=re.IGNORECASE) or "powermeter"


class HistoryStore:
    """Thread-safe in-memory DataFrame store for one sample history.

    Maintains a pandas DataFrame with the given schema (timestamp plus numeric
    fields). Supports appends, queries, statistics, and export to CSV/Parquet.

    Optional auto-flush: If auto_flush_interval_s is set, a background thread
    periodically writes the DataFrame to history_<name>.csv under storage_path.
    """

    def __init__(
        self,
        name: str,
        schema: Mapping[str, type],
        storage_path: Optional[str] = None,
        max_rows: int = 100000,
        auto_flush_interval_s: Optional[float] = None,
    ) -> None:
        """Initialize store, loading existing history from storage_path if present.

        Args:
            name: History name, used for the file name
            schema: Column schema (must contain "timestamp")
            storage_path: Directory for the CSV file. None keeps history in memory only.
            max_rows: Maximum rows to keep. Older rows are trimmed after appends.
            auto_flush_interval_s: If set, enable background auto-flush every N seconds.
        """
        if "timestamp" not in schema:
            raise ValueError("schema must contain a 'timestamp' column")

        self.name = name
        self._schema = dict(schema)
        self._columns = list(schema.keys())
        self._lock = RLock()
        self._max_rows = max_rows

        self._file_path: Optional[Path] = None
        if storage_path is not None:
            directory = Path(storage_path)
            if not directory.exists():
                directory.mkdir(parents=True, exist_ok=True)
                logger.warning(f"Created missing history storage directory: {directory}")
            self._file_path = directory / f"history_{safe_name(name)}.csv"

        self._df = self._load()

        # Auto-flush configuration
        self._auto_flush_interval = auto_flush_interval_s
        self._flush_thread: Optional[Thread] = None
        self._flush_stop_event = Event()

        if auto_flush_interval_s is not None:
            if self._file_path is None:
                raise ValueError("auto-flush requires a storage_path")
            self._start_auto_flush()

    @property
    def file_path(self) -> Optional[Path]:
        """CSV file backing this history, None for in-memory stores."""
        return self._file_path

    def _empty(self) -> pd.DataFrame:
        return pd.DataFrame(columns=self._columns)

    def _load(self) -> pd.DataFrame:
        if self._file_path is None or not self._file_path.exists():
            return self._empty()

        try:
            df = pd.read_csv(self._file_path)
        except Exception as e:
            logger.error(f"Cannot load history {self._file_path}, starting empty: {e}")
            return self._empty()

        missing = [c for c in self._columns if c not in df.columns]
        if missing:
            logger.error(f"History {self._file_path} lacks columns {missing}, starting empty")
            return self._empty()

        df = df[self._columns].tail(self._max_rows).reset_index(drop=True)
        logger.info(f"Loaded {len(df)} history rows from {self._file_path}")
        return df

    def record_sample(self, timestamp_s: int, fields: Mapping[str, Any]) -> None:
        """Append one sample. Never rejects; bad values are stored as 0.0.

        Args:
            timestamp_s: Unix timestamp in whole seconds
            fields: Field values keyed by column name
        """
        row = sample_to_row(timestamp_s, fields, self._schema)

        with self._lock:
            new_df = pd.DataFrame([row], columns=self._columns)
            if self._df.empty:
                self._df = new_df
            else:
                self._df = pd.concat([self._df, new_df], ignore_index=True)

            # Trim to max_rows (keep most recent)
            if len(self._df) > self._max_rows:
                excess = len(self._df) - self._max_rows
                self._df = self._df.iloc[excess:].reset_index(drop=True)
                logger.debug(f"Trimmed {excess} oldest rows, now {len(self._df)} rows")

        logger.debug(f"History {self.name} sample added: {row}")

    def get_dataframe(self) -> pd.DataFrame:
        """Get copy of entire DataFrame."""
        with self._lock:
            return self._df.copy()

    def __len__(self) -> int:
        with self._lock:
            return len(self._df)

    def get_recent(self, seconds: int = 3600) -> pd.DataFrame:
        """Get samples from the last N seconds.

        Args:
            seconds: Number of seconds of recent history to retrieve

        Returns:
            DataFrame containing only samples within the time window
        """
        with self._lock:
            if self._df.empty:
                return self._empty()

            df = self._df.copy()
            df["timestamp"] = pd.to_datetime(df["timestamp"], format="ISO8601", utc=True)

            cutoff = datetime.now(timezone.utc) - timedelta(seconds=seconds)
            recent = df[df["timestamp"] >= cutoff].copy()

            recent["timestamp"] = recent["timestamp"].apply(lambda x: x.isoformat())

            return recent.reset_index(drop=True)

    def get_latest(self) -> Optional[dict]:
        """Get the most recent sample as a dictionary, or None if empty."""
        with self._lock:
            if self._df.empty:
                return None
            return self._df.iloc[-1].to_dict()

    def get_stats(self) -> dict:
        """Get summary statistics about stored samples.

        Returns:
            Dictionary with keys:
                - row_count: Total number of samples
                - start_time: ISO timestamp of first sample (or None)
                - end_time: ISO timestamp of last sample (or None)
                - duration_s: Time span of data in seconds (or 0)
        """
        with self._lock:
            if self._df.empty:
                return {
                    "row_count": 0,
                    "start_time": None,
                    "end_time": None,
                    "duration_s": 0.0,
                }

            timestamps = pd.to_datetime(self._df["timestamp"], format="ISO8601", utc=True)
            start = timestamps.iloc[0]
            end = timestamps.iloc[-1]

            return {
                "row_count": len(self._df),
                "start_time": start.isoformat(),
                "end_time": end.isoformat(),
                "duration_s": (end - start).total_seconds(),
            }

    def export_csv(self, path: Optional[str] = None) -> str:
        """Export DataFrame to CSV file.

        Args:
            path: Output file path. Defaults to the backing file, or a
                  timestamped name for in-memory stores.

        Returns:
            Absolute path to exported file
        """
        with self._lock:
            if path is None:
                if self._file_path is not None:
                    path = str(self._file_path)
                else:
                    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                    path = f"history_{safe_name(self.name)}_{timestamp}.csv"

            self._df.to_csv(path, index=False)
            abs_path = str(Path(path).resolve())
            logger.info(f"Exported {len(self._df)} rows to CSV: {abs_path}")
            return abs_path

    def export_parquet(self, path: Optional[str] = None) -> str:
        """Export DataFrame to Parquet file (requires pyarrow).

        Returns:
            Absolute path to exported file
        """
        with self._lock:
            if path is None:
                timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                path = f"history_{safe_name(self.name)}_{timestamp}.parquet"

            self._df.to_parquet(path, index=False)
            abs_path = str(Path(path).resolve())
            logger.info(f"Exported {len(self._df)} rows to Parquet: {abs_path}")
            return abs_path

    def flush_to_disk(self, format: str = "csv", path: Optional[str] = None) -> str:
        """Flush current DataFrame to disk.

        Args:
            format: "csv" or "parquet"
            path: Output file path (optional)

        Returns:
            Absolute path to exported file

        Raises:
            ValueError: If format is not "csv" or "parquet"
        """
        if format == "csv":
            return self.export_csv(path)
        elif format == "parquet":
            return self.export_parquet(path)
        else:
            raise ValueError(f"Unknown format '{format}', expected 'csv' or 'parquet'")

    def clear(self) -> None:
        """Clear all stored samples (file untouched until next flush)."""
        with self._lock:
            self._df = self._empty()
            logger.debug(f"History {self.name} cleared")

    def _start_auto_flush(self) -> None:
        """Start background auto-flush thread."""
        self._flush_stop_event.clear()
        self._flush_thread = Thread(
            target=self._auto_flush_loop,
            name=f"HistoryAutoFlush-{self.name}",
            daemon=True,
        )
        self._flush_thread.start()
        logger.info(f"Auto-flush started for {self.name}: every {self._auto_flush_interval}s")

    def _auto_flush_loop(self) -> None:
        """Background thread that periodically flushes to disk."""
        assert self._auto_flush_interval is not None

        while not self._flush_stop_event.wait(timeout=self._auto_flush_interval):
            try:
                with self._lock:
                    if not self._df.empty:
                        self.export_csv()
            except Exception as e:
                logger.error(f"Auto-flush failed: {e}", exc_info=True)

        logger.info(f"Auto-flush loop stopped for {self.name}")

    def stop_auto_flush(self) -> None:
        """Stop auto-flush thread if running."""
        if self._flush_thread and self._flush_thread.is_alive():
            logger.debug("Stopping auto-flush thread...")
            self._flush_stop_event.set()
            self._flush_thread.join(timeout=5.0)
            self._flush_thread = None

    def close(self) -> None:
        """Stop auto-flush and write a final copy if file-backed."""
        self.stop_auto_flush()
        if self._file_path is not None:
            with self._lock:
                if not self._df.empty:
                    self.export_csv()
