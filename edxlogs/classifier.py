"""
Keep/drop classification of normalized events.

Every rule is evaluated independently against the full frame; a row is kept
only when no rule drops it. Three switches widen what is kept: non-content
pages, problem server confirmations and ancillary video events.
"""

import logging
from typing import Dict

import pandas as pd

from edxlogs.config import parse_bool
from edxlogs.loader import EVENT, EVENT_TYPE
from edxlogs.parser import EventParser

logger = logging.getLogger(__name__)

KEEP = "kp"
MODULE_KEY = "module.key"

NON_CONTENT_CATEGORIES = ("info", "progress", "wiki")

DROP_ALWAYS = {
    "enrollment": r"edx\.course\.enrollment\.",
    "page_close": r"page_close",
    "openassessment_upload": r"openassessment\.upload",
}
PROBLEM_SERVER_EVENTS = {
    "save_problem_success": r"save_problem_success",
    "showanswer": r"showanswer",
}
ANCILLARY_VIDEO_EVENTS = {
    "transcript": r"\w_transcript",
    "load_video": r"load_video",
    "speed_change_video": r"speed_change_video",
    "cc_menu": r"\wcc_menu",
}


def _text(series: pd.Series) -> pd.Series:
    return series.astype("string").fillna("")


def classify_events(df: pd.DataFrame, course: str, keep_non_content=False,
                    keep_problem_server_events=False, keep_ancillary_video_events=False) -> pd.DataFrame:
    """
    Add the keep flag column 'kp' (1 keep / 0 drop) and, for kept non-content
    pages, a synthetic module key.

    Raises:
        ConfigError: a switch is not a boolean (or boolean spelling).
    """
    nc = parse_bool("nc", keep_non_content)
    pse = parse_bool("pse", keep_problem_server_events)
    vid = parse_bool("vid", keep_ancillary_video_events)

    df = df.copy()
    event_type = _text(df[EVENT_TYPE])
    empty_payload = _text(df[EVENT]).str.contains("{}", regex=False)

    keep = pd.Series(True, index=df.index)
    if MODULE_KEY not in df.columns:
        df[MODULE_KEY] = pd.NA
    dropped: Dict[str, int] = {}

    def drop(name: str, mask: pd.Series):
        mask = mask & keep
        if mask.any():
            dropped[name] = int(mask.sum())
            keep[mask] = False

    # Pages without a learning object: empty payload outside the courseware
    no_module = empty_payload & ~event_type.str.contains("courseware", regex=False)
    non_content = pd.Series(False, index=df.index)
    for category in NON_CONTENT_CATEGORIES:
        mask = no_module & event_type.str.contains(category, regex=False)
        if nc and mask.any():
            df.loc[mask, MODULE_KEY] = EventParser.block_key(course, category, category)
        non_content |= mask
    drop("no_module", no_module & ~non_content)
    if not nc:
        drop("non_content", non_content)

    for name, pattern in DROP_ALWAYS.items():
        drop(name, event_type.str.contains(pattern, regex=True))
    if not pse:
        for name, pattern in PROBLEM_SERVER_EVENTS.items():
            drop(name, event_type.str.contains(pattern, regex=True))
    if not vid:
        for name, pattern in ANCILLARY_VIDEO_EVENTS.items():
            drop(name, event_type.str.contains(pattern, regex=True))

    df[KEEP] = keep.astype(int)
    if dropped:
        logger.info(f"Classifier dropped {sum(dropped.values())} of {len(df)} events: {dropped}")
    return df


def kept_events(df: pd.DataFrame) -> pd.DataFrame:
    return df[df[KEEP] == 1].drop(columns=[KEEP]).reset_index(drop=True)
