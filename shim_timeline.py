"""
shim-timeline: build an execution timeline from ShimCache and AmCache.

Each SYSTEM hive given on the command line is decoded and correlated on its
own; entries matching the supplied patterns anchor the timeline and an
optional Amcache.hve refines the bounds in between. Rows go to stdout (or
--output), status lines and logs go to stderr.
"""

import argparse
import logging
import os
import sys
from datetime import timedelta

import colorama
from colorama import Fore, Style

from collectors.amcache_claw import decode_amcache
from collectors.hive_accessor import load_hive
from collectors.shimcache_claw import read_shimcache
from config.analysis_config import AnalysisConfig, load_pattern_file
from timeline.correlation.correlation_engine import CorrelationEngine
from timeline.timeline_writer import TimelineWriter
from utils.error_handler import CorrelationError, ErrorHandler, ShimTimelineError

# Color definitions for consistent output
COLOR_SUCCESS = Fore.GREEN
COLOR_WARNING = Fore.YELLOW
COLOR_ERROR = Fore.RED
COLOR_INFO = Fore.CYAN
COLOR_HEADER = Fore.MAGENTA + Style.BRIGHT
COLOR_RESET = Style.RESET_ALL

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


class StatusPrinter:
    """Coloured status lines on stderr, silenced by --quiet."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def _print(self, color: str, prefix: str, message: str):
        if not self.quiet:
            print(f"{color}{prefix} {message}{COLOR_RESET}", file=sys.stderr)

    def header(self, message: str):
        self._print(COLOR_HEADER, "[*]", message)

    def info(self, message: str):
        self._print(COLOR_INFO, "[+]", message)

    def success(self, message: str):
        self._print(COLOR_SUCCESS, "[+]", message)

    def warning(self, message: str):
        self._print(COLOR_WARNING, "[!]", message)

    def error(self, message: str):
        # Errors are shown even in quiet mode
        print(f"{COLOR_ERROR}[x] {message}{COLOR_RESET}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shim-timeline",
        description="Correlate ShimCache entries with pattern anchors and AmCache records",
    )
    parser.add_argument("system", nargs="+", metavar="SYSTEM", help="Path to a SYSTEM registry hive")
    parser.add_argument("--amcache", metavar="AMCACHE", help="Path to an Amcache.hve hive")
    parser.add_argument("-e", "--regex", dest="regexes", action="append", default=[], metavar="REGEX",
                        help="Pattern identifying entries with a trustworthy timestamp (repeatable). "
                             "Matched case-sensitively against the raw path or program name; "
                             "prefix with (?i) to ignore case")
    parser.add_argument("-r", "--regexfile", dest="regex_files", action="append", default=[],
                        metavar="REGEXFILE",
                        help="File with one pattern per line (repeatable), matched like -e, "
                             "so use (?i) for case-insensitive patterns")
    parser.add_argument("--tspair", action="store_true",
                        help="Also anchor entries whose ShimCache and AmCache timestamps nearly coincide")
    parser.add_argument("--config", metavar="FILE", help="JSON configuration file")
    parser.add_argument("-o", "--output", metavar="OUTPUT", help="Write the timeline here instead of stdout")
    parser.add_argument("--progress", action="store_true", help="Show progress bars while parsing AmCache")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only errors on stderr")
    return parser


def collect_patterns(args, config: AnalysisConfig):
    """Command line patterns first, then pattern files, then configured patterns."""
    patterns = list(args.regexes)
    for path in args.regex_files:
        patterns.extend(load_pattern_file(path))
    patterns.extend(config.all_patterns())
    return patterns


def analyse_system_hive(path: str, engine: CorrelationEngine, amcache, writer: TimelineWriter,
                        status: StatusPrinter) -> int:
    """
    Decode and correlate one SYSTEM hive, writing its timeline rows.

    Returns:
        Number of rows written
    """
    status.header(f"Analysing {path}")
    shimcache = read_shimcache(load_hive(path))
    status.info(f"{len(shimcache.entries)} shimcache entries found ({shimcache.version.value})")

    entities = engine.correlate(shimcache.entries, shimcache.last_update_ts, amcache)
    if entities is None:
        status.warning(f"No entry with a timestamp matched the patterns in {path}, nothing to output")
        return 0

    rows = writer.write(entities, hive=path)
    status.success(f"{rows} timeline rows written for {path}")
    return rows


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    colorama.just_fix_windows_console()
    status = StatusPrinter(quiet=args.quiet)

    if args.config and not os.path.isfile(args.config):
        status.error(f"Configuration file {args.config} does not exist")
        return EXIT_USAGE
    config = AnalysisConfig(args.config)
    if args.config and not config.load():
        status.error(f"Could not read configuration {args.config}")
        return EXIT_USAGE

    if args.verbose:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.WARNING
    else:
        log_level = getattr(logging, str(config.get('log_level', 'INFO')).upper(), logging.INFO)
    error_handler = ErrorHandler(logger_name=None)
    error_handler.setup_logging(log_level)

    try:
        patterns = collect_patterns(args, config)
    except OSError as e:
        status.error(f"Could not read pattern file: {e}")
        return EXIT_USAGE

    try:
        engine = CorrelationEngine(
            patterns,
            near_pair_matching=args.tspair or bool(config.get('near_pair_matching')),
            near_pair_window=timedelta(seconds=config.get('near_pair_window_seconds', 60)),
        )
    except CorrelationError as e:
        status.error(str(e))
        return EXIT_USAGE

    amcache = None
    if args.amcache:
        show_progress = args.progress or bool(config.get('show_progress'))
        try:
            amcache = decode_amcache(load_hive(args.amcache), show_progress=show_progress)
        except ShimTimelineError as e:
            error_handler.handle_error(e, f"Failed to parse Amcache {args.amcache}", raise_exception=False)
            status.error(f"Amcache {args.amcache} could not be parsed")
            return EXIT_FAILURE
        status.info(f"{amcache.file_count} amcache file entries and "
                    f"{len(amcache.program_entries)} program entries loaded")

    try:
        sink = open(args.output, 'w', newline='', encoding='utf-8') if args.output else sys.stdout
    except OSError as e:
        status.error(f"Could not open output {args.output}: {e}")
        return EXIT_USAGE

    failures = 0
    try:
        writer = TimelineWriter(sink, delimiter=config.get('delimiter', ';'))
        for path in args.system:
            with error_handler.error_context(ShimTimelineError, f"Failed to analyse {path}",
                                             reraise=False) as context:
                analyse_system_hive(path, engine, amcache, writer, status)
            if context.failed:
                failures += 1
                status.error(f"{path} skipped")
    finally:
        if sink is not sys.stdout:
            sink.close()

    if failures:
        status.warning(f"{failures} of {len(args.system)} hives failed")
        return EXIT_FAILURE
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
