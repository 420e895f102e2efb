#!/usr/bin/env python3
"""
Triangle wave removal for chains of ES60 files.

Each input file is copied telegram by telegram to a new file next to it (or
in an output directory), with the triangle wave subtracted from the power
samples of every RAW telegram. Ping numbers run on across the files of a
chain so a survey split over many files is corrected as one sequence.
"""

import os
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from .exceptions import ConfigurationError, DecodeError, EndOfStream, FramingError
from .telegram_file import TelegramFile, write_telegram
from .telegram_structures import RawTelegram
from .waveform import correct, wave


DEFAULT_SUFFIX = 'c'
DEFAULT_PROGRESS_INTERVAL = 100   # pings between progress updates


class ProcessOutcome(Enum):
    COMPLETED = 'completed'
    INTERRUPTED = 'interrupted'


@dataclass
class FileResult:
    """What happened to one file of the chain."""
    input_path: str
    output_path: Optional[str] = None
    first_ping: Optional[int] = None
    last_ping: Optional[int] = None
    interrupted: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.interrupted


@dataclass
class ProcessResult:
    outcome: ProcessOutcome
    next_ping: int
    files: List[FileResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(1 for f in self.files if f.succeeded)

    @property
    def failed(self) -> List[FileResult]:
        return [f for f in self.files if f.error is not None]


class ProgressListener:
    """
    Receives progress from a correction run.

    The default implementation only logs. A GUI or CLI subclasses it to show
    progress and to offer cancelling the rest of the chain after an error.
    """

    def __init__(self):
        self.logger = logging.getLogger('ProgressListener')

    def update(self, message: str, percent_of_file: float, percent_of_total: float, is_file_complete: bool):
        if is_file_complete:
            self.logger.info(message)
        else:
            self.logger.debug(f"{message} ({percent_of_file:.0f}% of file, {percent_of_total:.0f}% of total)")

    def error(self, message: str) -> bool:
        """
        Report a failed file.

        Returns:
            True to cancel the remaining files, False to carry on
        """
        self.logger.error(message)
        return False

    def done(self, message: str):
        self.logger.info(message)


def output_path_for(input_path: str, output_directory: Optional[str], suffix: str) -> str:
    """Insert suffix before the extension; place the file in output_directory if given."""
    directory, name = os.path.split(input_path)
    stem, extension = os.path.splitext(name)
    if output_directory is not None:
        directory = output_directory
    return os.path.join(directory, stem + suffix + extension)


def _same_file(path1: str, path2: str) -> bool:
    if os.path.abspath(path1) == os.path.abspath(path2):
        return True
    return os.path.exists(path1) and os.path.exists(path2) and os.path.samefile(path1, path2)


class ChainCorrector:
    """
    Removes the triangle wave from a chain of files.

    Holds the ping counter that runs across the chain. A new ping starts
    whenever a RAW telegram arrives for a channel already seen in the current
    ping, and after the end of each file.
    """

    def __init__(self, initial_ping: int, output_directory: Optional[str] = None,
                 filename_suffix: str = DEFAULT_SUFFIX, listener: Optional[ProgressListener] = None,
                 cancel_event: Optional[threading.Event] = None,
                 progress_interval: int = DEFAULT_PROGRESS_INTERVAL):
        """
        Args:
            initial_ping: Position in the wave of the first ping of the first file
            output_directory: Directory for corrected files, default beside each input
            filename_suffix: Inserted before the extension of each output file name
            listener: Receives progress, errors and completion
            cancel_event: Set from another thread to stop before the next telegram
            progress_interval: Pings between progress updates
        """
        self.ping = initial_ping
        self.output_directory = output_directory
        self.filename_suffix = filename_suffix
        self.listener = listener or ProgressListener()
        self.cancel_event = cancel_event
        self.progress_interval = max(1, progress_interval)

        self.total_bytes = 0
        self.bytes_done = 0

        self.logger = logging.getLogger('ChainCorrector')

    def run(self, files: Sequence[str]) -> ProcessResult:
        """Correct each file in order, carrying the ping count from file to file."""
        self.total_bytes = sum(os.path.getsize(f) for f in files if os.path.isfile(f))
        self.bytes_done = 0
        result = ProcessResult(outcome=ProcessOutcome.COMPLETED, next_ping=self.ping)

        for path in files:
            if self._cancelled():
                result.outcome = ProcessOutcome.INTERRUPTED
                break

            file_result = FileResult(input_path=path)
            try:
                self._correct_file(path, file_result)
            except (ConfigurationError, FramingError, DecodeError, OSError) as e:
                message = f"Could not correct {path}: {e}"
                file_result.error = str(e)
                result.files.append(file_result)
                if self.listener.error(message):
                    result.outcome = ProcessOutcome.INTERRUPTED
                    break
                self.bytes_done += os.path.getsize(path) if os.path.isfile(path) else 0
                continue

            result.files.append(file_result)
            if file_result.interrupted:
                result.outcome = ProcessOutcome.INTERRUPTED
                break

        result.next_ping = self.ping
        if result.outcome is ProcessOutcome.INTERRUPTED:
            self.logger.warning(f"Interrupted after {result.processed} files, partial output kept")
            self.listener.done(f"Interrupted after {result.processed} files")
        else:
            self.listener.done(f"Processed {result.processed} files")
        return result

    def _correct_file(self, path: str, file_result: FileResult):
        """
        Correct one file into file_result.

        file_result.output_path is set once the output file has been created,
        so it names any partial output left by a failure.
        """
        output_path = output_path_for(path, self.output_directory, self.filename_suffix)
        if _same_file(path, output_path):
            raise ConfigurationError(f"Output file {output_path} would overwrite its input")

        name = os.path.basename(path)
        file_size = os.path.getsize(path)
        file_result.first_ping = self.ping
        frame_channels = set()

        self.logger.info(f"Correcting {path} from ping {self.ping} to {output_path}")

        with TelegramFile(path) as source, open(output_path, 'wb') as sink:
            file_result.output_path = output_path
            while True:
                if self._cancelled():
                    file_result.interrupted = True
                    break

                try:
                    telegram = source.read()
                except EndOfStream:
                    break

                if isinstance(telegram, RawTelegram):
                    try:
                        channel = telegram.channel
                    except DecodeError as e:
                        self.logger.warning(f"{name}: RAW telegram at offset {telegram.file_offset} "
                                            f"copied without a ping: {e}")
                        write_telegram(sink, telegram)
                        continue

                    if channel in frame_channels:
                        self.ping += 1
                        frame_channels = {channel}
                        if self.ping % self.progress_interval == 0:
                            self._report(f"{name} ping {self.ping}", sink.tell(), file_size, False)
                    else:
                        frame_channels.add(channel)

                    if wave(self.ping) != 0:
                        try:
                            correct(telegram, self.ping)
                        except DecodeError as e:
                            self.logger.warning(f"{name}: RAW telegram at offset {telegram.file_offset} "
                                                f"left uncorrected: {e}")

                write_telegram(sink, telegram)

            written = sink.tell()

        file_result.last_ping = self.ping
        if file_result.interrupted:
            self.bytes_done += written
            return

        self.bytes_done += file_size
        self._report(f"{name} pings: {file_result.first_ping}-{self.ping} to {os.path.basename(output_path)}",
                     file_size, file_size, True)
        self.ping += 1

    def _report(self, message: str, written: int, file_size: int, is_file_complete: bool):
        percent_of_file = 100.0 * written / file_size if file_size else 100.0
        if is_file_complete:
            done = self.bytes_done
        else:
            done = self.bytes_done + written
        percent_of_total = 100.0 * done / self.total_bytes if self.total_bytes else 100.0
        self.listener.update(message, percent_of_file, percent_of_total, is_file_complete)

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


def process(initial_ping: int, files: Sequence[str], output_directory: Optional[str] = None,
            filename_suffix: str = DEFAULT_SUFFIX, listener: Optional[ProgressListener] = None,
            cancel_event: Optional[threading.Event] = None,
            progress_interval: int = DEFAULT_PROGRESS_INTERVAL) -> ProcessResult:
    """
    Remove the triangle wave from a chain of files.

    Args:
        initial_ping: Position in the wave of the first ping of the first file
        files: Input files in survey order
        output_directory: Directory for corrected files, default beside each input
        filename_suffix: Inserted before the extension of each output file name
        listener: Receives progress, errors and completion
        cancel_event: Set from another thread to stop before the next telegram
        progress_interval: Pings between progress updates

    Returns:
        ProcessResult with the outcome and one FileResult per file attempted
    """
    corrector = ChainCorrector(initial_ping, output_directory, filename_suffix, listener,
                               cancel_event, progress_interval)
    return corrector.run(files)


class CorrectionJob(threading.Thread):
    """Runs process() on its own thread so a caller can cancel it."""

    def __init__(self, initial_ping: int, files: Sequence[str], output_directory: Optional[str] = None,
                 filename_suffix: str = DEFAULT_SUFFIX, listener: Optional[ProgressListener] = None,
                 progress_interval: int = DEFAULT_PROGRESS_INTERVAL):
        super().__init__(name='CorrectionJob', daemon=True)
        self.cancel_event = threading.Event()
        self.result: Optional[ProcessResult] = None
        self.exception: Optional[BaseException] = None
        self._corrector = ChainCorrector(initial_ping, output_directory, filename_suffix, listener,
                                         self.cancel_event, progress_interval)
        self._files = list(files)
        self.logger = logging.getLogger('CorrectionJob')

    def run(self):
        try:
            self.result = self._corrector.run(self._files)
        except Exception as e:
            self.exception = e
            self.logger.exception(f"Correction failed: {e}")

    def cancel(self):
        self.cancel_event.set()
