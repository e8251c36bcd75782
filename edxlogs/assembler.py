"""
Output records and bucket layout.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pandas as pd

from edxlogs.loader import SCORE_FIELDS, SESSION, TIME
from edxlogs.normalizer import OUTPUT_COLUMNS

logger = logging.getLogger(__name__)

EVENTS = "events"
ZERO_EVENTS = "zero_events"
NO_USABLE_EVENTS = "no_usable_events"
BUCKETS = (EVENTS, ZERO_EVENTS, NO_USABLE_EVENTS)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class OutputLayout:
    """Primary output directory plus the two special-case subdirectories."""

    root: Path
    zero_subdir: str = "zeroEvents"
    unusable_subdir: str = "noEventsProc"

    def directory(self, bucket: str) -> Path:
        if bucket == EVENTS:
            return Path(self.root)
        if bucket == ZERO_EVENTS:
            return Path(self.root) / self.zero_subdir
        if bucket == NO_USABLE_EVENTS:
            return Path(self.root) / self.unusable_subdir
        raise ValueError(f"Unknown output bucket: {bucket}")

    def path(self, bucket: str, user_id: str) -> Path:
        return self.directory(bucket) / f"{user_id}.csv"

    def ensure(self) -> None:
        for bucket in BUCKETS:
            d = self.directory(bucket)
            if d.exists() and not d.is_dir():
                raise FileExistsError(f"Path can't be created because a file with that name already exists: {d}")
            d.mkdir(parents=True, exist_ok=True)

    def completed_users(self) -> set:
        """User ids that already have an output file in any bucket."""
        done = set()
        for bucket in BUCKETS:
            d = self.directory(bucket)
            if d.is_dir():
                done.update(p.stem for p in d.glob("*.csv"))
        return done


@dataclass
class UserOutcome:
    """Result of formatting one user's log, ready to be written."""

    user_id: str
    bucket: str
    records: pd.DataFrame
    detail: Optional[str] = None


def assemble_records(df: pd.DataFrame, user_id: Optional[str]) -> pd.DataFrame:
    """Project resolved events to the fixed 14-column output schema, time ordered."""
    out = pd.DataFrame(index=df.index)
    out["user_id"] = user_id
    out["mod_hex_id"] = df["mod_hex_id"]
    out["order"] = pd.to_numeric(df["order"], errors="coerce").astype("Int64")
    out["mod_parent_id"] = df["mod_parent_id"]
    out["module_type"] = df["module_type"]
    out["event_type"] = df["event_type"]
    out["time"] = df[TIME]
    out["period"] = df["period"]
    out["session"] = df[SESSION]
    out["tsess"] = df["tsess"]
    for col in SCORE_FIELDS:
        out[col] = df[col] if col in df.columns else pd.NA
    return out[OUTPUT_COLUMNS].reset_index(drop=True)


def write_outcome(outcome: UserOutcome, layout: OutputLayout) -> Path:
    path = layout.path(outcome.bucket, outcome.user_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    outcome.records.to_csv(path, index=False, date_format=TIME_FORMAT)
    logger.info(f"Wrote {len(outcome.records)} rows for user {outcome.user_id} -> {path}")
    return path
