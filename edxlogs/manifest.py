"""
Bucket manifests: user id lists for the formatted, zero-event and
no-usable-event outputs of a run.
"""

import logging
from pathlib import Path
from typing import Dict, List

import pandas as pd

from edxlogs.assembler import EVENTS, NO_USABLE_EVENTS, ZERO_EVENTS, OutputLayout

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = {
    EVENTS: "user_ids-events",
    ZERO_EVENTS: "user_ids-noEvents",
    NO_USABLE_EVENTS: "user_ids-unusableEvents",
}


def list_bucket(layout: OutputLayout, bucket: str) -> List[str]:
    """User ids with an output file in one bucket, sorted."""
    directory = layout.directory(bucket)
    if not directory.is_dir():
        return []
    return sorted(p.stem for p in directory.glob("*.csv") if p.is_file())


def write_manifests(layout: OutputLayout, manifest_dir, course: str) -> Dict[str, Path]:
    """
    Write one CSV per bucket (single column 'userID').

    The listing for each bucket is read once, so files appearing while this
    runs are either fully in or out of that manifest.
    """
    manifest_dir = Path(manifest_dir)
    manifest_dir.mkdir(parents=True, exist_ok=True)
    written = {}
    for bucket, suffix in MANIFEST_SUFFIX.items():
        users = list_bucket(layout, bucket)
        path = manifest_dir / f"{course}-{suffix}.csv"
        pd.DataFrame({"userID": users}).to_csv(path, index=False)
        logger.info(f"Manifest {bucket}: {len(users)} users -> {path}")
        written[bucket] = path
    return written
