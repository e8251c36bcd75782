"""
Per-user formatting pipeline and batch runner.
"""

import time
import queue
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pandas as pd

from edxlogs.assembler import (
    EVENTS,
    NO_USABLE_EVENTS,
    ZERO_EVENTS,
    OutputLayout,
    UserOutcome,
    assemble_records,
    write_outcome,
)
from edxlogs.classifier import classify_events, kept_events
from edxlogs.config import ConfigError, FormatterConfig
from edxlogs.loader import COURSE_ID, CourseStructure, load_user_events, user_file
from edxlogs.normalizer import normalize_events, placeholder_record, user_id_of
from edxlogs.parser import EventParser
from edxlogs.resolver import ModuleResolver
from edxlogs.sessions import assign_temporal_sessions, backfill_platform_session

logger = logging.getLogger(__name__)

FAILED = "failed"
TIMEOUT = "timeout"
SKIPPED = "skipped"


class UserTimeout(Exception):
    """Raised inside a worker when a user's deadline passes between stages."""
    pass


def check_deadline(deadline: Optional[float], stage: str) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise UserTimeout(f"deadline passed before {stage}")


@dataclass
class BatchReport:
    """Per-user statuses for one batch run."""

    statuses: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    elapsed_sec: float = 0.0

    def record(self, user_id: str, status: str, error: Optional[str] = None) -> None:
        self.statuses[user_id] = status
        if error:
            self.errors[user_id] = error

    def users(self, status: str) -> List[str]:
        return [u for u, s in self.statuses.items() if s == status]

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for status in self.statuses.values():
            counts[status] = counts.get(status, 0) + 1
        return counts


class LogFormatter:
    """
    Formats student event logs for one course run.

    Holds the read-only course structure and the run configuration; no other
    state survives between users.
    """

    def __init__(self, structure: CourseStructure, config: Optional[FormatterConfig] = None):
        self.structure = structure
        self.config = config or FormatterConfig()
        self.resolver = ModuleResolver(structure, extraction=self.config.extraction)

    def _course(self, raw: pd.DataFrame) -> str:
        course = None
        if COURSE_ID in raw.columns:
            ids = raw[COURSE_ID].dropna()
            if len(ids):
                course = EventParser.course_key(str(ids.iloc[0]))
        course = course or EventParser.course_key(self.structure.course_id)
        if not course:
            logger.warning("No course id in events or structure; synthesized module keys will lack it")
            course = ""
        return course

    def format_events(self, raw: pd.DataFrame, user_id: Optional[str] = None,
                      deadline: Optional[float] = None) -> UserOutcome:
        """
        Run one user's raw rows through normalization, segmentation,
        classification and resolution.

        Returns the outcome with its bucket; nothing is written here. With a
        deadline (time.monotonic() value) UserTimeout is raised at the first
        stage boundary after it passes.
        """
        cfg = self.config
        if raw is None or raw.empty:
            return UserOutcome(user_id, ZERO_EVENTS, placeholder_record(user_id), "no events")

        user_id = user_id or user_id_of(raw)
        course = self._course(raw)

        check_deadline(deadline, "normalization")
        events = normalize_events(raw, threshold=cfg.session_threshold, cap_periods=cfg.cap_periods)
        if events.empty:
            return UserOutcome(user_id, ZERO_EVENTS, placeholder_record(user_id), "no parseable timestamps")

        check_deadline(deadline, "segmentation")
        events = assign_temporal_sessions(events, threshold=cfg.session_threshold)
        events = backfill_platform_session(events, sentinel=cfg.session_sentinel)

        check_deadline(deadline, "classification")
        classified = classify_events(
            events, course,
            keep_non_content=cfg.keep_non_content,
            keep_problem_server_events=cfg.keep_problem_server_events,
            keep_ancillary_video_events=cfg.keep_ancillary_video_events,
        )
        kept = kept_events(classified)
        if kept.empty:
            return UserOutcome(user_id, NO_USABLE_EVENTS, classified, "all events dropped by classification")

        check_deadline(deadline, "resolution")
        resolved, stats = self.resolver.resolve(kept, course)
        if resolved.empty:
            return UserOutcome(user_id, NO_USABLE_EVENTS, classified,
                               f"none of {stats['events']} kept events resolved to a module")

        check_deadline(deadline, "assembly")
        records = assemble_records(resolved, user_id)
        logger.info(
            f"User {user_id}: {len(raw)} raw, {len(kept)} kept, {len(records)} resolved "
            f"events in {records['tsess'].max()} temporal sessions"
        )
        return UserOutcome(user_id, EVENTS, records)

    def process_user(self, input_dir, user_id: str, deadline: Optional[float] = None) -> UserOutcome:
        path = user_file(input_dir, user_id)
        if not Path(path).exists():
            logger.warning(f"No event log for user {user_id} at {path}")
            return UserOutcome(user_id, ZERO_EVENTS, placeholder_record(user_id), "missing input file")
        raw = load_user_events(path)
        return self.format_events(raw, user_id=user_id, deadline=deadline)

    # ─────────────────────────────────────────────
    # BATCH
    # ─────────────────────────────────────────────

    def _work(self, input_dir, uid: str, deadline: Optional[float], results: "queue.Queue") -> None:
        try:
            outcome = self.process_user(input_dir, uid, deadline=deadline)
        except Exception as e:
            results.put((uid, None, e))
        else:
            results.put((uid, outcome, None))

    def run_batch(self, user_ids: Iterable[str], input_dir, layout: OutputLayout) -> BatchReport:
        """
        Format every user and write each outcome to its bucket.

        Each user runs on its own daemon thread, at most `workers` at a time;
        outcomes are written from this thread. A user exceeding user_timeout
        (measured from when its thread starts) is recorded as timed out, its
        slot is handed to the next user and any late result is discarded.
        Workers stop by themselves at the next stage boundary after their
        deadline, and one that never returns does not keep the process alive.
        Per-user errors are recorded and the batch continues; ConfigError
        aborts.
        """
        cfg = self.config
        report = BatchReport()
        start = time.monotonic()
        layout.ensure()

        user_ids = list(dict.fromkeys(user_ids))
        if cfg.skip_completed:
            done = layout.completed_users()
            for uid in user_ids:
                if uid in done:
                    report.record(uid, SKIPPED)
            user_ids = [u for u in user_ids if u not in done]
            if done:
                logger.info(f"Skipping {len(report.users(SKIPPED))} users with existing output")

        todo = deque(user_ids)
        total = len(report.statuses) + len(todo)
        running: Dict[str, float] = {}
        results: "queue.Queue" = queue.Queue()
        poll = 0.5 if cfg.user_timeout is None else max(0.01, min(0.5, cfg.user_timeout / 4))

        while todo or running:
            while todo and len(running) < cfg.workers:
                uid = todo.popleft()
                now = time.monotonic()
                deadline = None if cfg.user_timeout is None else now + cfg.user_timeout
                running[uid] = now
                threading.Thread(
                    target=self._work, args=(input_dir, uid, deadline, results),
                    name=f"edxlogs-user-{uid}", daemon=True,
                ).start()

            try:
                uid, outcome, error = results.get(timeout=poll)
            except queue.Empty:
                pass
            else:
                if running.pop(uid, None) is None:
                    logger.debug(f"Discarding late result for user {uid}")
                else:
                    self._collect(uid, outcome, error, layout, report)
                    logger.info(f"Processed {len(report.statuses)} of {total} users")

            if cfg.user_timeout is not None:
                now = time.monotonic()
                for uid, t0 in list(running.items()):
                    if now - t0 > cfg.user_timeout:
                        del running[uid]
                        logger.error(f"User {uid} exceeded {cfg.user_timeout}s; result discarded")
                        report.record(uid, TIMEOUT, f"exceeded {cfg.user_timeout}s")

        report.elapsed_sec = time.monotonic() - start
        logger.info(f"Batch complete in {report.elapsed_sec:.1f}s: {report.counts()}")
        return report

    def _collect(self, uid: str, outcome: Optional[UserOutcome], error: Optional[Exception],
                 layout: OutputLayout, report: BatchReport) -> None:
        if isinstance(error, ConfigError):
            raise error
        if isinstance(error, UserTimeout):
            logger.error(f"User {uid} exceeded {self.config.user_timeout}s ({error}); result discarded")
            report.record(uid, TIMEOUT, str(error))
            return
        if error is not None:
            logger.error(f"Failed to format log for user {uid}", exc_info=error)
            report.record(uid, FAILED, str(error))
            return
        if outcome.detail:
            logger.info(f"User {uid} routed to {outcome.bucket}: {outcome.detail}")
        write_outcome(outcome, layout)
        report.record(uid, outcome.bucket)
