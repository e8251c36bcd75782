"""
Input loading: per-user raw event CSVs and the shared course structure table.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd

from edxlogs.parser import EventParser

logger = logging.getLogger(__name__)

# Column names as flattened from the edX tracking log JSON
USER_ID = "context.user_id"
COURSE_ID = "context.course_id"
EVENT = "event"
EVENT_TYPE = "event_type"
TIME = "time"
SESSION = "session"
USAGE_KEY = "context.module.usage_key"
SCORE_FIELDS = ["event.attempts", "event.grade", "event.max_grade", "event.success"]

RAW_COLUMNS = [USER_ID, COURSE_ID, EVENT, EVENT_TYPE, TIME, SESSION, USAGE_KEY] + SCORE_FIELDS
REQUIRED_RAW_COLUMNS = [EVENT, EVENT_TYPE, TIME]

STRUCTURE_REQUIRED = ["id", "modparent_childlevel", "treelevel", "order"]


class InputError(Exception):
    """Raised when an input table lacks the columns the pipeline depends on."""
    pass


def load_user_events(path) -> pd.DataFrame:
    """
    Read one user's raw event rows.

    Everything is read as text so ids, payloads and tokens are never mangled
    by type inference; numeric score fields are passed through untouched.
    Optional columns that are absent are added empty.
    """
    try:
        df = pd.read_csv(path, dtype=str, keep_default_na=False, na_values=[""])
    except pd.errors.EmptyDataError:
        logger.debug(f"{path} is empty")
        return pd.DataFrame(columns=RAW_COLUMNS)
    if df.empty:
        return df
    missing = [c for c in REQUIRED_RAW_COLUMNS if c not in df.columns]
    if missing:
        raise InputError(f"{path}: missing required columns {missing}")
    for col in RAW_COLUMNS:
        if col not in df.columns:
            df[col] = pd.NA
    return df


def load_user_ids(path) -> List[str]:
    """User id list: column 'user_id' (or 'student_id'), else the first column."""
    df = pd.read_csv(path, dtype=str)
    for col in ("user_id", "student_id", "id"):
        if col in df.columns:
            series = df[col]
            break
    else:
        series = df.iloc[:, 0]
    ids = [s.strip() for s in series.dropna().astype(str) if s.strip()]
    logger.info(f"Loaded {len(ids)} user ids from {path}")
    return ids


class CourseStructure:
    """
    Read-only view over the course module lookup table.

    Holds two indexes: composite 'parent/child-index' key -> (node id, tree
    level), and leaf hex id -> (order, parent id, module type). Nothing is
    mutated after construction, so one instance can serve any number of
    concurrent readers.
    """

    def __init__(self, table: pd.DataFrame, course_id: Optional[str] = None):
        missing = [c for c in STRUCTURE_REQUIRED if c not in table.columns]
        if missing:
            raise InputError(f"Course structure table missing columns {missing}")

        table = table.copy()
        table["id"] = table["id"].astype(str)
        if "mod_hex_id" not in table.columns:
            table["mod_hex_id"] = table["id"].map(lambda k: EventParser.split_module_key(k)[1])
        if "module_type" not in table.columns:
            table["module_type"] = table["id"].map(lambda k: EventParser.split_module_key(k)[0])
        if "mod_parent_id" not in table.columns:
            table["mod_parent_id"] = table["modparent_childlevel"].astype(str).str.split("/").str[0]
        table["order"] = pd.to_numeric(table["order"], errors="coerce")
        table["treelevel"] = pd.to_numeric(table["treelevel"], errors="coerce")

        self.course_id = course_id
        if self.course_id is None and "courseID" in table.columns and len(table):
            self.course_id = str(table["courseID"].iloc[0])

        children = table.dropna(subset=["modparent_childlevel"])
        children = children.drop_duplicates(subset=["modparent_childlevel"], keep="first")
        self._children: Dict[str, Tuple[str, Optional[int]]] = {
            str(key): (node_id, None if pd.isna(level) else int(level))
            for key, node_id, level in zip(children["modparent_childlevel"], children["id"], children["treelevel"])
        }

        leaves = table.dropna(subset=["mod_hex_id", "order"])
        leaves = leaves.drop_duplicates(subset=["mod_hex_id"], keep="first")
        self._leaves = leaves[["mod_hex_id", "order", "mod_parent_id", "module_type"]].reset_index(drop=True)
        self._size = len(table)

    def __len__(self) -> int:
        return self._size

    def child(self, lookup_key: str) -> Tuple[Optional[str], Optional[int]]:
        """Node id and tree level for a 'parent/child-index' key, (None, None) on a miss."""
        return self._children.get(lookup_key, (None, None))

    @property
    def leaves(self) -> pd.DataFrame:
        """Ordered leaf rows keyed by mod_hex_id (a copy; callers may modify it)."""
        return self._leaves.copy()


def load_course_structure(path, course_id: Optional[str] = None) -> CourseStructure:
    table = pd.read_csv(path, dtype={"id": str, "modparent_childlevel": str, "mod_hex_id": str, "mod_parent_id": str})
    structure = CourseStructure(table, course_id=course_id)
    logger.info(f"Loaded course structure: {len(structure)} modules from {path}")
    return structure


def user_file(input_dir, user_id: str) -> Path:
    return Path(input_dir) / f"{user_id}.csv"
