"""
Temporal normalization of a single user's event log.
"""

import logging
from typing import Callable, Optional

import numpy as np
import pandas as pd

from edxlogs.loader import TIME, USER_ID

logger = logging.getLogger(__name__)

OUTPUT_COLUMNS = [
    "user_id", "mod_hex_id", "order", "mod_parent_id", "module_type", "event_type",
    "time", "period", "session", "tsess", "event.attempts", "event.grade",
    "event.max_grade", "event.success",
]

_ZONE_SUFFIX = r"(?:Z|[+-]\d{2}:?\d{2})$"


def mean_period(periods: np.ndarray) -> float:
    """Placeholder period for the last event: mean of the user's measured gaps."""
    if len(periods) == 0:
        return 0.0
    return float(np.mean(periods))


# The last event has no successor, so its period is synthetic. Callers may
# pass any callable taking the measured periods and returning minutes.
FINAL_PERIOD_POLICY: Callable[[np.ndarray], float] = mean_period


def parse_event_times(times: pd.Series) -> pd.Series:
    """Strip the zone offset and parse; unparseable values become NaT."""
    stripped = times.astype("string").str.strip().str.replace(_ZONE_SUFFIX, "", regex=True)
    return pd.to_datetime(stripped, errors="coerce", format="ISO8601")


def normalize_events(df: pd.DataFrame, threshold: float = 60.0, cap_periods: bool = True,
                     final_period: Optional[Callable[[np.ndarray], float]] = None) -> pd.DataFrame:
    """
    Sort a user's events chronologically and add the 'period' column.

    period[i] is the gap in minutes to the next event. With cap_periods, gaps
    at or above the session threshold are recorded as the threshold itself.
    The last event's period comes from final_period (FINAL_PERIOD_POLICY by
    default) applied to the other periods.
    """
    final_period = final_period or FINAL_PERIOD_POLICY

    df = df.copy()
    df[TIME] = parse_event_times(df[TIME])
    bad = df[TIME].isna()
    if bad.any():
        logger.warning(f"Dropping {int(bad.sum())} events with unparseable timestamps")
        df = df[~bad]

    df = df.sort_values(TIME, kind="mergesort").reset_index(drop=True)
    if df.empty:
        df["period"] = pd.Series(dtype=float)
        return df

    gaps = df[TIME].diff().shift(-1).dt.total_seconds().to_numpy()[:-1] / 60.0
    if cap_periods:
        gaps = np.where(gaps >= threshold, float(threshold), gaps)
    df["period"] = np.append(gaps, final_period(gaps))
    return df


def placeholder_record(user_id: Optional[str]) -> pd.DataFrame:
    """The single-row output written for users with no events at all."""
    row = {col: pd.NA for col in OUTPUT_COLUMNS}
    row["user_id"] = user_id
    return pd.DataFrame([row], columns=OUTPUT_COLUMNS)


def user_id_of(df: pd.DataFrame, fallback: Optional[str] = None) -> Optional[str]:
    if USER_ID in df.columns:
        ids = df[USER_ID].dropna()
        if len(ids):
            return str(ids.iloc[0])
    return fallback
