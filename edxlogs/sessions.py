"""
Temporal session (tsess) segmentation and platform session backfill.
"""

import logging

import numpy as np
import pandas as pd

from edxlogs.loader import SESSION

logger = logging.getLogger(__name__)

SESSION_GAP_MINUTES = 60
SESSION_SENTINEL = "lastsession"


def assign_temporal_sessions(df: pd.DataFrame, threshold: float = SESSION_GAP_MINUTES) -> pd.DataFrame:
    """
    Add 'tsess' to a time-ordered frame that already carries 'period'.

    An event whose period reaches the threshold is the last event of its
    session. Those boundary events are numbered 1..k in time order, a trailing
    non-boundary tail gets k + 1, and every other event takes the id of the
    next boundary at or after it.
    """
    df = df.copy()
    n = len(df)
    if n == 0:
        df["tsess"] = pd.Series(dtype="Int64")
        return df

    boundary = (df["period"] >= threshold).to_numpy()
    tsess = pd.Series(np.nan, index=df.index)
    k = int(boundary.sum())
    if k == 0:
        df["tsess"] = 1
        return df

    tsess[boundary] = np.arange(1, k + 1)
    if not boundary[-1]:
        tsess.iloc[-1] = k + 1
    df["tsess"] = tsess.bfill().astype(int)
    logger.debug(f"Segmented {n} events into {int(df['tsess'].iloc[-1])} temporal sessions")
    return df


def backfill_platform_session(df: pd.DataFrame, sentinel: str = SESSION_SENTINEL) -> pd.DataFrame:
    """
    Fill blank platform session tokens from the next populated token.

    Server-issued events often have no token. A terminal anchor holding the
    sentinel is appended before the backward fill and removed afterwards, so
    blanks after the last real token end up with the sentinel.
    """
    df = df.copy()
    if df.empty:
        return df

    tokens = df[SESSION].astype("string").str.strip()
    tokens = tokens.mask(tokens == "")
    anchored = pd.concat([tokens, pd.Series([sentinel], dtype="string")], ignore_index=True)
    filled = anchored.bfill().iloc[:-1]
    df[SESSION] = filled.to_numpy()
    return df
