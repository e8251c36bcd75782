import threading
import time

import pandas as pd
import pytest

from edxlogs.assembler import EVENTS, NO_USABLE_EVENTS, ZERO_EVENTS, OutputLayout
from edxlogs.config import ConfigError, FormatterConfig
from edxlogs.loader import CourseStructure
from edxlogs.normalizer import OUTPUT_COLUMNS
from edxlogs.pipeline import FAILED, SKIPPED, TIMEOUT, LogFormatter, UserTimeout

import eventlog_factory as factory
from eventlog_factory import PROBLEM, VERT1, VERT2, VIDEO, event


@pytest.fixture
def formatter(structure, config):
    return LogFormatter(structure, config)


def test_realistic_log_formats_to_expected_records(formatter, raw_events):
    outcome = formatter.format_events(raw_events, user_id="42")
    assert outcome.bucket == EVENTS
    out = outcome.records

    assert list(out.columns) == OUTPUT_COLUMNS
    assert out["event_type"].tolist() == [
        "mod_access", "problem_check", "play_video", "seq_goto", "seq_next", "problem_show", "pause_video",
    ]
    assert out["mod_hex_id"].tolist() == [PROBLEM, PROBLEM, VIDEO, VIDEO, PROBLEM, PROBLEM, VIDEO]
    assert out["order"].tolist() == [1, 1, 3, 3, 1, 1, 3]
    assert out["mod_parent_id"].tolist() == [VERT1, VERT1, VERT2, VERT2, VERT1, VERT1, VERT2]
    assert out["module_type"].tolist() == ["problem", "problem", "video", "video", "problem", "problem", "video"]
    assert out["session"].tolist() == ["s1", "s1", "s1", "s2", "s2", "s2", "lastsession"]
    assert out["tsess"].tolist() == [1, 1, 1, 2, 2, 2, 2]
    assert out["user_id"].unique().tolist() == ["42"]

    assert out.loc[0, "period"] == pytest.approx(5.0)
    # 84 minute gap recorded as the threshold
    assert out.loc[2, "period"] == pytest.approx(60.0)
    assert out.loc[6, "period"] == pytest.approx(86 / 12)

    assert out["time"].is_monotonic_increasing
    assert out.loc[1, "event.success"] == "correct"
    assert pd.isna(out.loc[0, "event.grade"])


def test_reshuffled_input_gives_same_output(formatter, raw_events):
    baseline = formatter.format_events(raw_events, user_id="42").records
    shuffled = raw_events.sample(frac=1, random_state=7).reset_index(drop=True)
    again = formatter.format_events(shuffled, user_id="42").records
    pd.testing.assert_frame_equal(baseline, again)


def test_widening_switches_can_only_add_records(structure, raw_events):
    narrow = LogFormatter(structure, FormatterConfig()).format_events(raw_events, "42").records
    wide = LogFormatter(structure, FormatterConfig(
        keep_non_content=True, keep_problem_server_events=True, keep_ancillary_video_events=True,
    )).format_events(raw_events, "42").records
    assert len(wide) > len(narrow)
    assert set(narrow["event_type"]) <= set(wide["event_type"])
    assert {"showanswer", "load_video"} <= set(wide["event_type"])


def test_user_id_falls_back_to_log_column(formatter, raw_events):
    outcome = formatter.format_events(raw_events)
    assert outcome.user_id == "42"


def test_empty_log_goes_to_zero_events(formatter):
    outcome = formatter.format_events(pd.DataFrame(), user_id="7")
    assert outcome.bucket == ZERO_EVENTS
    assert len(outcome.records) == 1
    assert outcome.records.loc[0, "user_id"] == "7"


def test_everything_classified_away_goes_to_no_usable_events(formatter):
    df = factory.frame([
        event("2017-06-05T10:00:00+00:00", "page_close", session="s1"),
        event("2017-06-05T10:01:00+00:00", "edx.course.enrollment.activated", '{"mode": "audit"}'),
    ])
    outcome = formatter.format_events(df, user_id="42")
    assert outcome.bucket == NO_USABLE_EVENTS
    # classified rows are kept for inspection
    assert len(outcome.records) == 2
    assert outcome.records["kp"].tolist() == [0, 0]


def test_nothing_resolved_goes_to_no_usable_events(formatter):
    df = factory.frame([
        event("2017-06-05T10:00:00+00:00", "problem_check", '{"answers": "y"}',
              usage_key=factory.key("problem", factory.REMOVED)),
    ])
    outcome = formatter.format_events(df, user_id="42")
    assert outcome.bucket == NO_USABLE_EVENTS
    assert "resolved" in outcome.detail


# ─────────────────────────────────────────────
# BATCH
# ─────────────────────────────────────────────

def test_batch_routes_every_user_to_one_bucket(formatter, raw_events, layout, write_user, tmp_path):
    input_dir = write_user("42", raw_events)
    (input_dir / "5.csv").write_text("")
    write_user("9", factory.frame([event("2017-06-05T10:00:00+00:00", "page_close")]))

    report = formatter.run_batch(["42", "5", "9", "404"], input_dir, layout)

    assert report.statuses == {"42": EVENTS, "5": ZERO_EVENTS, "9": NO_USABLE_EVENTS, "404": ZERO_EVENTS}
    assert (layout.root / "42.csv").exists()
    assert (layout.root / "zeroEvents" / "5.csv").exists()
    assert (layout.root / "zeroEvents" / "404.csv").exists()
    assert (layout.root / "noEventsProc" / "9.csv").exists()

    written = pd.read_csv(layout.root / "42.csv", dtype={"user_id": str})
    assert list(written.columns) == OUTPUT_COLUMNS
    assert len(written) == 7
    assert written.loc[0, "time"] == "2017-06-05 10:00:00"

    placeholder = pd.read_csv(layout.root / "zeroEvents" / "404.csv", dtype={"user_id": str})
    assert placeholder["user_id"].tolist() == ["404"]


def test_batch_isolates_bad_input(formatter, raw_events, layout, write_user):
    input_dir = write_user("42", raw_events)
    write_user("13", pd.DataFrame({"event": ["{}"], "event_type": ["x"]}))

    report = formatter.run_batch(["13", "42"], input_dir, layout)
    assert report.statuses["13"] == FAILED
    assert "missing required columns" in report.errors["13"]
    assert report.statuses["42"] == EVENTS
    assert not (layout.root / "13.csv").exists()


def test_batch_skips_completed_users(structure, raw_events, layout, write_user):
    input_dir = write_user("42", raw_events)
    write_user("43", raw_events)
    existing = layout.root / "42.csv"
    existing.write_text("untouched\n")

    formatter = LogFormatter(structure, FormatterConfig(skip_completed=True))
    report = formatter.run_batch(["42", "43"], input_dir, layout)

    assert report.users(SKIPPED) == ["42"]
    assert report.statuses["43"] == EVENTS
    assert existing.read_text() == "untouched\n"


def test_batch_reprocesses_without_skip(formatter, raw_events, layout, write_user):
    input_dir = write_user("42", raw_events)
    existing = layout.root / "42.csv"
    existing.write_text("stale\n")
    formatter.run_batch(["42"], input_dir, layout)
    assert existing.read_text() != "stale\n"


def test_batch_parallel_matches_sequential(structure, raw_events, tmp_path, write_user):
    input_dir = None
    for uid in ("1", "2", "3", "4"):
        rows = raw_events.copy()
        rows["context.user_id"] = uid
        input_dir = write_user(uid, rows)

    seq_layout = OutputLayout(tmp_path / "seq")
    par_layout = OutputLayout(tmp_path / "par")
    LogFormatter(structure, FormatterConfig(workers=1)).run_batch(["1", "2", "3", "4"], input_dir, seq_layout)
    report = LogFormatter(structure, FormatterConfig(workers=3)).run_batch(["1", "2", "3", "4"], input_dir, par_layout)

    assert report.counts() == {EVENTS: 4}
    for uid in ("1", "2", "3", "4"):
        assert (seq_layout.root / f"{uid}.csv").read_text() == (par_layout.root / f"{uid}.csv").read_text()


@pytest.mark.parametrize("workers", [1, 2])
def test_hung_user_does_not_hold_back_the_batch(structure, raw_events, layout, write_user, monkeypatch, workers):
    input_dir = write_user("42", raw_events)
    write_user("43", raw_events)
    write_user("hung", raw_events)
    original = LogFormatter.process_user
    release = threading.Event()

    def process_user(self, input_dir, user_id, deadline=None):
        if user_id == "hung":
            release.wait(30)
        return original(self, input_dir, user_id, deadline=deadline)

    monkeypatch.setattr(LogFormatter, "process_user", process_user)
    formatter = LogFormatter(structure, FormatterConfig(workers=workers, user_timeout=1.0))
    started = time.monotonic()
    try:
        report = formatter.run_batch(["hung", "42", "43"], input_dir, layout)
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert elapsed < 5
    assert report.statuses == {"hung": TIMEOUT, "42": EVENTS, "43": EVENTS}
    assert not (layout.root / "hung.csv").exists()
    assert (layout.root / "42.csv").exists()


def test_late_result_after_timeout_is_not_written(structure, raw_events, layout, write_user, monkeypatch):
    input_dir = write_user("42", raw_events)
    write_user("slow", raw_events)
    original = LogFormatter.process_user
    release = threading.Event()
    slow_returned = threading.Event()

    def process_user(self, input_dir, user_id, deadline=None):
        if user_id == "slow":
            release.wait(10)
            # ignores its deadline and hands back a complete outcome
            outcome = original(self, input_dir, user_id)
            slow_returned.set()
            return outcome
        release.set()
        slow_returned.wait(5)
        time.sleep(0.1)
        return original(self, input_dir, user_id, deadline=deadline)

    monkeypatch.setattr(LogFormatter, "process_user", process_user)
    formatter = LogFormatter(structure, FormatterConfig(workers=1, user_timeout=1.0))
    try:
        report = formatter.run_batch(["slow", "42"], input_dir, layout)
    finally:
        release.set()

    assert report.statuses == {"slow": TIMEOUT, "42": EVENTS}
    assert not (layout.root / "slow.csv").exists()


def test_deadline_stops_work_between_stages(formatter, raw_events):
    with pytest.raises(UserTimeout, match="normalization"):
        formatter.format_events(raw_events, user_id="42", deadline=time.monotonic() - 1)


def test_worker_timeout_is_recorded_as_timeout(structure, raw_events, layout, write_user, monkeypatch):
    input_dir = write_user("42", raw_events)

    def process_user(self, input_dir, user_id, deadline=None):
        raise UserTimeout("deadline passed before resolution")

    monkeypatch.setattr(LogFormatter, "process_user", process_user)
    report = LogFormatter(structure, FormatterConfig(user_timeout=10)).run_batch(["42"], input_dir, layout)
    assert report.statuses["42"] == TIMEOUT
    assert "resolution" in report.errors["42"]


def test_configuration_error_in_worker_aborts_batch(structure, raw_events, layout, write_user, monkeypatch):
    input_dir = write_user("42", raw_events)

    def process_user(self, input_dir, user_id, deadline=None):
        raise ConfigError("invalid 'nc' specification")

    monkeypatch.setattr(LogFormatter, "process_user", process_user)
    with pytest.raises(ConfigError):
        LogFormatter(structure, FormatterConfig()).run_batch(["42"], input_dir, layout)


def test_batch_deduplicates_user_ids(formatter, raw_events, layout, write_user):
    input_dir = write_user("42", raw_events)
    report = formatter.run_batch(["42", "42"], input_dir, layout)
    assert report.counts() == {EVENTS: 1}


def _info_visit():
    return factory.frame([
        event("2017-06-05T10:00:00+00:00", f"/courses/{factory.COURSE_ID}/info", '{"POST": {}, "GET": {}}', session="s1"),
        event("2017-06-05T10:02:00+00:00", "play_video", factory.video_payload(VIDEO), session="s1"),
    ])


def test_kept_non_content_page_without_structure_leaf_is_dropped(structure):
    outcome = LogFormatter(structure, FormatterConfig(keep_non_content=True)).format_events(_info_visit(), "42")
    assert outcome.bucket == EVENTS
    assert outcome.records["mod_hex_id"].tolist() == [VIDEO]


def test_kept_non_content_page_is_emitted_when_structure_lists_it():
    table = factory.structure_table()
    table.loc[len(table)] = [factory.key("info", "info"), f"{VERT2}/2", 5, 4, factory.COURSE_ID]
    structure = CourseStructure(table)

    with_pages = LogFormatter(structure, FormatterConfig(keep_non_content=True)).format_events(_info_visit(), "42")
    assert with_pages.records["mod_hex_id"].tolist() == ["info", VIDEO]
    assert with_pages.records["module_type"].tolist() == ["info", "video"]
    assert with_pages.records["order"].tolist() == [4, 3]
    assert with_pages.records["event_type"].tolist()[0] == "mod_access"

    without_pages = LogFormatter(structure, FormatterConfig()).format_events(_info_visit(), "42")
    assert without_pages.records["mod_hex_id"].tolist() == [VIDEO]
