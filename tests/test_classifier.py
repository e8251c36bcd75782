import itertools

import pytest

from edxlogs.classifier import classify_events, kept_events
from edxlogs.config import ConfigError

import eventlog_factory as factory
from eventlog_factory import COURSE, event


def _classify(rows, **switches):
    return classify_events(factory.frame(rows), COURSE, **switches)


def _kept_types(rows, **switches):
    return kept_events(_classify(rows, **switches))["event_type"].tolist()


def test_empty_payload_outside_courseware_is_dropped():
    rows = [
        event("t", "/courses/x/about", '{"POST": {}, "GET": {}}'),
        event("t", "/courses/x/courseware/ch/seq/", '{"POST": {}, "GET": {}}'),
    ]
    assert _kept_types(rows) == ["/courses/x/courseware/ch/seq/"]


@pytest.mark.parametrize("category", ["info", "progress", "wiki"])
def test_non_content_pages_follow_switch(category):
    rows = [event("t", f"/courses/{factory.COURSE_ID}/{category}", '{"POST": {}, "GET": {}}')]
    assert _kept_types(rows, keep_non_content=False) == []

    kept = kept_events(_classify(rows, keep_non_content=True))
    assert len(kept) == 1
    assert kept.loc[0, "module.key"] == f"block-v1:{COURSE}+type@{category}+block@{category}"


@pytest.mark.parametrize("event_type", [
    "edx.course.enrollment.activated",
    "page_close",
    "openassessment.upload_file",
])
def test_always_dropped_events(event_type):
    rows = [event("t", event_type, '{"x": 1}')]
    for nc, pse, vid in itertools.product([True, False], repeat=3):
        assert _kept_types(rows, keep_non_content=nc, keep_problem_server_events=pse,
                           keep_ancillary_video_events=vid) == []


@pytest.mark.parametrize("event_type", ["showanswer", "save_problem_success"])
def test_problem_server_events_follow_switch(event_type):
    rows = [event("t", event_type, '{"x": 1}')]
    assert _kept_types(rows, keep_problem_server_events=False) == []
    assert _kept_types(rows, keep_problem_server_events=True) == [event_type]


@pytest.mark.parametrize("event_type", [
    "show_transcript", "hide_transcript", "load_video", "speed_change_video", "video_show_cc_menu",
])
def test_ancillary_video_events_follow_switch(event_type):
    rows = [event("t", event_type, factory.video_payload(factory.VIDEO))]
    assert _kept_types(rows, keep_ancillary_video_events=False) == []
    assert _kept_types(rows, keep_ancillary_video_events=True) == [event_type]


def test_core_video_and_problem_events_always_kept():
    rows = [
        event("t", "play_video", factory.video_payload(factory.VIDEO)),
        event("t", "pause_video", factory.video_payload(factory.VIDEO)),
        event("t", "problem_check", '{"answers": "x"}'),
    ]
    assert _kept_types(rows) == ["play_video", "pause_video", "problem_check"]


def test_fewer_retained_categories_never_keep_more_events(raw_events):
    def kept_count(nc, pse, vid):
        df = classify_events(raw_events, COURSE, keep_non_content=nc,
                             keep_problem_server_events=pse, keep_ancillary_video_events=vid)
        return int(df["kp"].sum())

    combos = list(itertools.product([False, True], repeat=3))
    for wide in combos:
        for narrow in combos:
            if all(n <= w for n, w in zip(narrow, wide)):
                assert kept_count(*narrow) <= kept_count(*wide)


@pytest.mark.parametrize("bad", ["maybe", 2, None])
def test_invalid_non_content_switch_is_fatal(bad):
    with pytest.raises(ConfigError):
        _classify([event("t", "play_video")], keep_non_content=bad)


def test_string_switch_spellings_accepted():
    rows = [event("t", "showanswer", '{"x": 1}')]
    assert _kept_types(rows, keep_problem_server_events="true") == ["showanswer"]
