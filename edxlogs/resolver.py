"""
Module resolution
─────────────────────────────────────────────────────────────────────────────
Derives a module key for every kept event, then walks references to branch
nodes (sequential blocks) down the course tree to the leaf content module the
learner actually saw:

  pass 1   {sequential id}/{child ref}  -> vertical (or other child)
  pass 2   {pass-1 id}/1                -> first leaf content module

Only events whose final module has a sequence order in the course structure
survive; modules removed from the structure after the run are dropped.
"""

import logging
from typing import Dict, Optional, Tuple

import pandas as pd

from edxlogs.classifier import MODULE_KEY
from edxlogs.loader import CourseStructure, EVENT, EVENT_TYPE, USAGE_KEY
from edxlogs.parser import (
    EventParser,
    SEQUENTIAL_TYPE,
    GOTO_KEY_TOKEN,
    GOTO_CHILD_TOKEN,
    PREV_NEXT_KEY_TOKEN,
    PREV_NEXT_CHILD_TOKEN,
)

logger = logging.getLogger(__name__)

CHILD_REF = "mod.child.ref"
TREE_LEVEL = "treelevel"
MODULE_ACCESS = "mod_access"

PROBLEM_SHOW = r"problem_show"
VIDEO_EVENT = r"\w_video"
TRANSCRIPT_EVENT = r"\w_transcript"
COURSEWARE_EVENT = r"/courseware"
SEQ_GOTO = r',\s"widget_placement"'
SEQ_PREV_NEXT = r'\{"widget_placement'
MODULE_URL = r"course-v1"


def _text(series: pd.Series) -> pd.Series:
    return series.astype("string").fillna("")


class ModuleResolver:
    """
    Resolves event module references against one course structure.

    The structure is only read, so a single resolver can be shared by
    concurrent workers.
    """

    def __init__(self, structure: CourseStructure, extraction: str = "positional"):
        self.structure = structure
        self.structured = extraction == "structured"

    # ─────────────────────────────────────────────
    # EXTRACTION
    # ─────────────────────────────────────────────

    def extract(self, df: pd.DataFrame, course: str, structured: Optional[bool] = None) -> pd.DataFrame:
        """
        Fill 'module.key' and 'mod.child.ref'. Rules run in order and later
        rules overwrite earlier ones for the rows they match.
        """
        structured = self.structured if structured is None else structured
        df = df.copy()
        if MODULE_KEY not in df.columns:
            df[MODULE_KEY] = pd.NA
        df[MODULE_KEY] = df[MODULE_KEY].astype("object")
        df[CHILD_REF] = pd.Series([None] * len(df), index=df.index, dtype="object")

        event_type = _text(df[EVENT_TYPE])
        payload = df[EVENT]
        payload_text = _text(payload)

        # Problem and open assessment events carry the usage key directly;
        # synthetic non-content keys set by the classifier are left alone
        unset = df[MODULE_KEY].isna()
        df.loc[unset, MODULE_KEY] = df.loc[unset, USAGE_KEY]

        mask = event_type.str.contains(PROBLEM_SHOW, regex=True)
        if mask.any():
            df.loc[mask, MODULE_KEY] = payload[mask].map(
                lambda p: EventParser.problem_show_key(p, structured=structured))

        for pattern in (VIDEO_EVENT, TRANSCRIPT_EVENT):
            mask = event_type.str.contains(pattern, regex=True)
            if mask.any():
                df.loc[mask, MODULE_KEY] = payload[mask].map(
                    lambda p: EventParser.video_key(p, course, structured=structured))

        mask = event_type.str.contains(COURSEWARE_EVENT, regex=True)
        if mask.any():
            df.loc[mask, MODULE_KEY] = event_type[mask].map(lambda t: EventParser.courseware_key(t, course))
            df.loc[mask, CHILD_REF] = "1"

        for pattern, key_token, child_token in (
            (SEQ_GOTO, GOTO_KEY_TOKEN, GOTO_CHILD_TOKEN),
            (SEQ_PREV_NEXT, PREV_NEXT_KEY_TOKEN, PREV_NEXT_CHILD_TOKEN),
        ):
            mask = payload_text.str.contains(pattern, regex=True)
            if mask.any():
                refs = payload[mask].map(
                    lambda p: EventParser.navigation_ref(p, key_token, child_token, structured=structured))
                df.loc[mask, MODULE_KEY] = refs.map(lambda r: r[0])
                df.loc[mask, CHILD_REF] = refs.map(lambda r: r[1])

        df[CHILD_REF] = df[CHILD_REF].map(EventParser.clean_child_ref)
        return df

    # ─────────────────────────────────────────────
    # HIERARCHY LOOKUP
    # ─────────────────────────────────────────────

    def _descend(self, node_key: Optional[str], child_ref: Optional[str]) -> Tuple[Optional[str], Optional[int]]:
        parent = EventParser.hex_id(node_key)
        if parent is None or child_ref is None:
            return None, None
        return self.structure.child(f"{parent}/{child_ref}")

    def resolve_branch(self, module_key: str, child_ref: Optional[str]) -> Tuple[Optional[str], Optional[int]]:
        """Sequential key + child position -> (leaf module key, tree level), or (None, None)."""
        node, _level = self._descend(module_key, child_ref)
        if node is None:
            return None, None
        return self._descend(node, "1")

    def resolve_hierarchy(self, df: pd.DataFrame) -> pd.DataFrame:
        df = df.copy()
        df[TREE_LEVEL] = pd.NA
        branch = _text(df[MODULE_KEY]).str.contains(SEQUENTIAL_TYPE, regex=False)
        if not branch.any():
            return df

        resolved = [
            self.resolve_branch(key, ref)
            for key, ref in zip(df.loc[branch, MODULE_KEY], df.loc[branch, CHILD_REF])
        ]
        df.loc[branch, MODULE_KEY] = [r[0] for r in resolved]
        df.loc[branch, TREE_LEVEL] = [r[1] for r in resolved]
        misses = sum(1 for r in resolved if r[0] is None)
        if misses:
            logger.debug(f"{misses} of {len(resolved)} branch references did not resolve to a leaf")
        return df

    # ─────────────────────────────────────────────
    # STRUCTURE JOIN
    # ─────────────────────────────────────────────

    def attach_structure(self, df: pd.DataFrame) -> pd.DataFrame:
        """Split module keys into type/hex id and join order and parent from the structure."""
        df = df.copy()
        parsed = df[MODULE_KEY].map(EventParser.split_module_key)
        df["module_type"] = parsed.map(lambda p: p[0])
        df["mod_hex_id"] = parsed.map(lambda p: p[1])

        leaves = self.structure.leaves[["mod_hex_id", "order", "mod_parent_id"]]
        merged = df.merge(leaves, on="mod_hex_id", how="left", sort=False)
        merged.index = df.index
        return merged

    def resolve(self, df: pd.DataFrame, course: str) -> Tuple[pd.DataFrame, Dict[str, int]]:
        """
        Full resolution of kept events.

        Returns the resolved rows (only those with a sequence order, in the
        original time order) and counts for logging.
        """
        extracted = self.extract(df, course)
        walked = self.resolve_hierarchy(extracted)
        joined = self.attach_structure(walked)

        has_order = joined["order"].notna()
        stats = {
            "events": len(joined),
            "resolved": int(has_order.sum()),
            "unresolved": int((~has_order).sum()),
        }
        if stats["unresolved"]:
            logger.info(f"Dropping {stats['unresolved']} events whose module has no order in the course structure")
        resolved = joined[has_order].copy()

        module_url = _text(resolved[EVENT_TYPE]).str.contains(MODULE_URL, regex=False)
        resolved.loc[module_url, EVENT_TYPE] = MODULE_ACCESS
        return resolved.reset_index(drop=True), stats


def compare_extraction(df: pd.DataFrame, course: str, structure: CourseStructure) -> pd.DataFrame:
    """
    Rows where positional and structured extraction disagree.

    Run over logs already formatted with the positional layout before
    switching a course to structured extraction.
    """
    resolver = ModuleResolver(structure)
    positional = resolver.extract(df, course, structured=False)
    structured = resolver.extract(df, course, structured=True)
    differs = (
        positional[MODULE_KEY].fillna("").astype(str) != structured[MODULE_KEY].fillna("").astype(str)
    ) | (
        positional[CHILD_REF].fillna("").astype(str) != structured[CHILD_REF].fillna("").astype(str)
    )
    report = df.loc[differs, [EVENT_TYPE, EVENT]].copy()
    report["positional_key"] = positional.loc[differs, MODULE_KEY]
    report["structured_key"] = structured.loc[differs, MODULE_KEY]
    report["positional_child"] = positional.loc[differs, CHILD_REF]
    report["structured_child"] = structured.loc[differs, CHILD_REF]
    if len(report):
        logger.warning(f"Extraction strategies disagree on {len(report)} of {len(df)} events")
    return report
