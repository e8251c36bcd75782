"""
edX tracking log extraction
─────────────────────────────────────────────────────────────────────────────
Reads the daily NDJSON tracking archives (*.log.gz) and writes one raw event
CSV per requested user, named {user_id}.csv, in the column layout the
formatter expects.

Each archive is streamed once for the whole batch of users instead of once
per user. Users that already have a file in the output directory are skipped.
"""

from __future__ import annotations

import gzip
import json
import logging
import time
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

ARCHIVE_PATTERN = "*.log.gz"

EXTRACT_COLUMNS = [
    "accept_language", "agent", "augmented.country_code", "context.course_id",
    "context.org_id", "context.user_id", "event", "event_source", "event_type", "time",
    "username", "name", "session", "context.module.display_name",
    "context.module.usage_key", "event.problem_id", "event.attempts", "event.grade",
    "event.max_grade", "event.state.seed", "event.success", "event.answer.file_key",
    "event.attempt_number", "event.created_at", "event.submission_uuid",
    "event.submitted_at", "event.feedback", "event.feedback_text",
    "event.rubric.content_hash", "event.score_type", "event.scored_at", "event.scorer_id",
]

_NESTED_EVENT = "_event"


def iter_archive(path) -> Iterator[Dict]:
    """Yield each JSON record of one gzipped NDJSON archive; malformed lines are skipped."""
    skipped = 0
    with gzip.open(path, "rt", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except ValueError:
                skipped += 1
                continue
            if isinstance(record, dict):
                yield record
    if skipped:
        logger.warning(f"{path}: skipped {skipped} malformed lines")


def record_user_id(record: Dict) -> Optional[str]:
    context = record.get("context")
    if not isinstance(context, dict):
        return None
    uid = context.get("user_id")
    if uid is None or uid == "":
        return None
    return str(uid)


def _prepare(record: Dict) -> Dict:
    """
    Keep the payload as text in 'event' and also expose object payload fields
    as event.* columns.
    """
    record = dict(record)
    payload = record.get("event")
    if isinstance(payload, dict):
        record["event"] = json.dumps(payload)
        record[_NESTED_EVENT] = payload
    return record


def records_to_frame(records: List[Dict]) -> pd.DataFrame:
    if not records:
        return pd.DataFrame(columns=EXTRACT_COLUMNS)
    df = pd.json_normalize([_prepare(r) for r in records])
    df = df.rename(columns=lambda c: "event" + c[len(_NESTED_EVENT):] if c.startswith(_NESTED_EVENT + ".") else c)
    return df.reindex(columns=EXTRACT_COLUMNS)


class LogArchiveExtractor:
    """Filters course tracking archives down to per-user raw event files."""

    def __init__(self, data_dir, output_dir):
        self.data_dir = Path(data_dir)
        self.output_dir = Path(output_dir)

    def archives(self) -> List[Path]:
        files = sorted(self.data_dir.glob(ARCHIVE_PATTERN))
        if not files:
            logger.warning(f"No {ARCHIVE_PATTERN} archives in {self.data_dir}")
        return files

    def completed_users(self) -> set:
        if not self.output_dir.is_dir():
            return set()
        return {p.stem for p in self.output_dir.glob("*.csv")}

    def extract(
        self,
        user_ids: List[str],
        progress_cb: Optional[Callable[[int, int], None]] = None,
    ) -> Dict[str, Path]:
        """
        Write {user_id}.csv for every requested user without existing output.

        Matched rows are appended to {user_id}.csv.part after each archive, so
        at most one archive's matches are held in memory. The part files are
        renamed once every archive has been read; an interrupted run leaves
        only part files and those users are extracted again next time. Users
        with no events in any archive still get a header-only file, which the
        formatter routes to the zero events bucket.
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        done = self.completed_users()
        pending = [str(u) for u in dict.fromkeys(user_ids) if str(u) not in done]
        if len(pending) < len(user_ids):
            logger.info(f"Skipping {len(user_ids) - len(pending)} users with existing event files")
        if not pending:
            return {}

        wanted = set(pending)
        parts = {uid: self.output_dir / f"{uid}.csv.part" for uid in pending}
        started = set()
        files = self.archives()
        start = time.monotonic()

        for i, path in enumerate(files, 1):
            logger.info(f"Processing log file {i} of {len(files)}: {path.name}")
            matched: Dict[str, List[Dict]] = {}
            for record in iter_archive(path):
                uid = record_user_id(record)
                if uid in wanted:
                    matched.setdefault(uid, []).append(record)
            for uid, records in matched.items():
                self._append(parts[uid], records, header=uid not in started)
                started.add(uid)
            logger.info(f"{path.name}: {sum(len(r) for r in matched.values())} events for "
                        f"{len(matched)} requested users ({time.monotonic() - start:.1f}s elapsed)")
            if progress_cb:
                progress_cb(i, len(files))

        written = {}
        for uid in pending:
            if uid not in started:
                self._append(parts[uid], [], header=True)
            out = self.output_dir / f"{uid}.csv"
            parts[uid].replace(out)
            written[uid] = out
        logger.info(f"Wrote {len(written)} user event files to {self.output_dir}")
        return written

    @staticmethod
    def _append(path: Path, records: List[Dict], header: bool) -> None:
        records_to_frame(records).to_csv(path, mode="w" if header else "a", header=header, index=False)
