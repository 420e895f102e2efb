#!/usr/bin/env python3
"""
Command line for es60_adjust.

    es60_adjust correct 1234 survey-D20240101-T000000.raw ...
    es60_adjust analyse survey-D20240101-T000000.raw ...
    es60_adjust track survey-D20240101-T000000.raw
"""

import sys
import argparse
import logging

from .config import Es60AdjustConfig, load_config
from .corrector import CorrectionJob, ProcessOutcome, ProgressListener
from .exceptions import ConfigurationError, DecodeError, FramingError
from .nmea import TrackAccumulator
from .phase_search import Algorithm, Ambiguous, Estimate, NotDetected, Range, analyse
from .telegram_file import TelegramFile
from .waveform import PERIOD


class ConsoleProgress(ProgressListener):
    """Prints per-file progress to stderr."""

    def update(self, message: str, percent_of_file: float, percent_of_total: float, is_file_complete: bool):
        super().update(message, percent_of_file, percent_of_total, is_file_complete)
        end = '\n' if is_file_complete else '\r'
        print(f"[{percent_of_total:5.1f}%] {message:<60} {percent_of_file:5.1f}%", end=end,
              file=sys.stderr, flush=True)


def describe(result) -> str:
    """One line description of a phase search result."""
    if isinstance(result, NotDetected):
        return "None - triangle wave not detected"
    if isinstance(result, Ambiguous):
        return f"Unknown - {result.candidates} equally ranked values, the first is {result.phase}"
    if isinstance(result, Range):
        return (f"{result.low} - {result.high} (end {result.final_low} - {result.final_high}), "
                f"no turning point in the data")
    if isinstance(result, Estimate):
        flag = "" if result.reliable else " ?? too close to a turning point to be reliable"
        return f"{result.phase} (end {result.final}){flag}"
    return str(result)


def run_correct(options, config: Es60AdjustConfig) -> int:
    correction = config.correction
    suffix = options.suffix if options.suffix is not None else correction.filename_suffix
    output_directory = options.output_dir or correction.output_directory

    job = CorrectionJob(options.ping, options.files, output_directory, suffix,
                        listener=ConsoleProgress(), progress_interval=correction.progress_interval)
    job.start()
    try:
        while job.is_alive():
            job.join(0.5)
    except KeyboardInterrupt:
        job.cancel()
        job.join()

    if job.exception is not None or job.result is None:
        return 1
    if job.result.outcome is ProcessOutcome.INTERRUPTED:
        return 130
    return 1 if job.result.failed else 0


def run_analyse(options, config: Es60AdjustConfig) -> int:
    defaults = config.analysis
    try:
        report = analyse(
            options.files,
            first=defaults.first if options.first is None else options.first,
            last=defaults.last if options.last is None else options.last,
            avg_window=defaults.avg_window if options.avg_window is None else options.avg_window,
            detection_window=defaults.detection_window if options.window is None else options.window,
            search=defaults.search if options.search is None else options.search,
            skip=defaults.skip if options.skip is None else options.skip,
            algorithm=options.algorithm or defaults.algorithm,
        )
    except (OSError, FramingError, DecodeError) as e:
        logging.getLogger('es60_adjust').error(f"Could not analyse {' '.join(options.files)}: {e}")
        return 1

    params = report.parameters
    print(f"First {params.first}, Last {params.last}, Average {params.avg_window}, "
          f"Window {params.detection_window}, Pings {report.max_pings}, Skip {params.skip}  "
          f"{params.algorithm.value}")
    for summary in report.summaries:
        print(f"{summary.path}: {summary.start_time} - {summary.end_time}, "
              f"samples {summary.min_samples}-{summary.max_samples}")
    for channel, analysis in report.channels.items():
        print(f"Channel {channel} ({analysis.pings} pings): {describe(analysis.result)}")
    return 0


def run_track(options, config: Es60AdjustConfig) -> int:
    track = TrackAccumulator()
    try:
        with TelegramFile(options.file) as source:
            while True:
                point = source.read_point(options.sentence)
                if point is None:
                    break
                fix = track.update(point[0])
                if fix is None:
                    continue
                speed = '' if fix.speed_knots is None else f"{fix.speed_knots:.2f}"
                print(f"{fix.time.isoformat()}\t{fix.latitude:.6f}\t{fix.longitude:.6f}\t{speed}")
    except (OSError, FramingError) as e:
        logging.getLogger('es60_adjust').error(f"Could not read {options.file}: {e}")
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Remove and analyse the ES60 triangle wave error',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--config', help='YAML parameter file')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default from config, INFO)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    correct_parser = subparsers.add_parser('correct', help='Remove the triangle wave from a chain of files')
    correct_parser.add_argument('ping', type=int,
                                help=f'Ping number of the first ping of the first file, 0-{PERIOD - 1}')
    correct_parser.add_argument('files', nargs='+', help='.raw files in survey order')
    correct_parser.add_argument('-o', '--output-dir', help='Directory for corrected files')
    correct_parser.add_argument('-s', '--suffix', help='Suffix inserted before .raw (default c)')
    correct_parser.set_defaults(func=run_correct)

    analyse_parser = subparsers.add_parser('analyse', help='Estimate the phase of the triangle wave')
    analyse_parser.add_argument('files', nargs='+', help='.raw files in survey order')
    analyse_parser.add_argument('--first', type=int, help='First sample to integrate')
    analyse_parser.add_argument('--last', type=int, help='Last sample to integrate')
    analyse_parser.add_argument('--avg-window', type=int, help='Pings either side to smooth over')
    analyse_parser.add_argument('--window', type=int, help='Candidate phases summed per score')
    analyse_parser.add_argument('--search', type=int, help='Pings to examine')
    analyse_parser.add_argument('--skip', type=int, help='Pings to skip at the start')
    analyse_parser.add_argument('--algorithm', choices=[a.value for a in Algorithm],
                                help='Deviation weighting')
    analyse_parser.set_defaults(func=run_analyse)

    track_parser = subparsers.add_parser('track', help='List navigation fixes with speed')
    track_parser.add_argument('file', help='.raw file')
    track_parser.add_argument('--sentence', help='Only use this NMEA sentence type, e.g. GGA')
    track_parser.set_defaults(func=run_track)

    return parser


def main(args=None) -> int:
    options = build_parser().parse_args(args)

    try:
        config = load_config(options.config)
    except (ConfigurationError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=options.log_level or config.log_level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )
    return options.func(options, config)


if __name__ == '__main__':
    sys.exit(main())
