"""
Command line entry point.

  edxlogs extract  --data DIR --output DIR --users users.csv
  edxlogs format   --input DIR --output DIR --users users.csv --structure lookup.csv
  edxlogs manifest --output DIR --manifests DIR --course Org+Course+Run
"""

import sys
import logging
import argparse
from typing import List, Optional

from edxlogs.assembler import OutputLayout
from edxlogs.config import ConfigError, load_config
from edxlogs.extractor import LogArchiveExtractor
from edxlogs.loader import InputError, load_course_structure, load_user_ids
from edxlogs.manifest import write_manifests
from edxlogs.parser import EventParser
from edxlogs.pipeline import LogFormatter

logger = logging.getLogger(__name__)


def _bool_flag(parser: argparse.ArgumentParser, name: str, help_text: str):
    parser.add_argument(f"--{name}", dest=name.replace("-", "_"), action=argparse.BooleanOptionalAction,
                        default=None, help=help_text)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="edxlogs", description="Format edX student event logs for trajectory analysis.")
    ap.add_argument("--config", dest="config", default=None, help="YAML configuration file")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    ex = sub.add_parser("extract", help="Split tracking log archives into per-user event files")
    ex.add_argument("--data", required=True, help="Directory with *.log.gz tracking archives")
    ex.add_argument("--output", required=True, help="Directory for {user_id}.csv files")
    ex.add_argument("--users", required=True, help="CSV listing user ids")

    fm = sub.add_parser("format", help="Format per-user event logs")
    fm.add_argument("--input", required=True, help="Directory with raw {user_id}.csv files")
    fm.add_argument("--output", required=True, help="Primary output directory")
    fm.add_argument("--users", required=True, help="CSV listing user ids")
    fm.add_argument("--structure", required=True, help="Course module lookup CSV")
    fm.add_argument("--course", default=None, help="Course id when the structure table has none")
    fm.add_argument("--manifests", default=None, help="Also write bucket manifests to this directory")
    fm.add_argument("--session-threshold", dest="session_threshold", type=float, default=None,
                    help="Minutes of inactivity that end a temporal session (default 60)")
    _bool_flag(fm, "keep-non-content", "Keep course info, progress and wiki pages")
    _bool_flag(fm, "keep-problem-server-events", "Keep showanswer and save_problem_success events")
    _bool_flag(fm, "keep-ancillary-video-events", "Keep transcript, load, speed and caption video events")
    _bool_flag(fm, "cap-periods", "Cap gaps at the session threshold")
    _bool_flag(fm, "skip-completed", "Skip users that already have output")
    fm.add_argument("--extraction", choices=["positional", "structured"], default=None)
    fm.add_argument("--workers", type=int, default=None)
    fm.add_argument("--user-timeout", dest="user_timeout", type=float, default=None,
                    help="Seconds allowed per user")

    mf = sub.add_parser("manifest", help="Write user id lists for each output bucket")
    mf.add_argument("--output", required=True, help="Primary output directory of a format run")
    mf.add_argument("--manifests", required=True, help="Directory for manifest CSVs")
    mf.add_argument("--course", required=True, help="Course id used in manifest names")
    return ap


def _layout(output: str, config) -> OutputLayout:
    return OutputLayout(output, zero_subdir=config.zero_subdir, unusable_subdir=config.unusable_subdir)


def run_format(args, config) -> int:
    structure = load_course_structure(args.structure, course_id=args.course)
    layout = _layout(args.output, config)
    formatter = LogFormatter(structure, config)
    report = formatter.run_batch(load_user_ids(args.users), args.input, layout)
    if args.manifests:
        course = EventParser.course_key(structure.course_id) or "course"
        write_manifests(layout, args.manifests, course)
    for uid, error in report.errors.items():
        logger.warning(f"{uid}: {error}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        if args.command == "extract":
            LogArchiveExtractor(args.data, args.output).extract(load_user_ids(args.users))
            return 0

        if args.command == "manifest":
            config = load_config(args.config)
            write_manifests(_layout(args.output, config), args.manifests, EventParser.course_key(args.course))
            return 0

        config = load_config(
            args.config,
            session_threshold=args.session_threshold,
            keep_non_content=args.keep_non_content,
            keep_problem_server_events=args.keep_problem_server_events,
            keep_ancillary_video_events=args.keep_ancillary_video_events,
            cap_periods=args.cap_periods,
            skip_completed=args.skip_completed,
            extraction=args.extraction,
            workers=args.workers,
            user_timeout=args.user_timeout,
        )
        return run_format(args, config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    except (InputError, FileNotFoundError, FileExistsError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
