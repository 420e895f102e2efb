#!/usr/bin/env python3
"""
Phase search for the ES60 triangle wave.

Integrates a range of samples from every ping, then scores each of the 2721
possible alignments of the triangle wave against the ping sequence. The
alignment with the smallest summed deviation is the phase of the first ping
of the file. A flat model with no wave is scored too, so recordings from
sounders that do not add the wave are reported as such.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .telegram_file import TelegramFile
from .telegram_structures import NmeaTelegram, RawTelegram
from .exceptions import DecodeError
from .waveform import HALF, PERIOD, TURN_DOWN, TURN_UP, WAVE


logger = logging.getLogger(__name__)

# Estimates closer than this to a turning point are unreliable on short data
TURNING_POINT_MARGIN = 32


class Algorithm(Enum):
    """Weighting applied to each deviation before summing."""
    LINEAR = 'linear'
    SQUARE = 'square'
    SQRT = 'sqrt'
    LOG1P = 'log1p'


WEIGHTINGS = MappingProxyType({
    Algorithm.LINEAR: lambda x: x,
    Algorithm.SQUARE: np.square,
    Algorithm.SQRT: np.sqrt,
    Algorithm.LOG1P: np.log1p,
})


@dataclass(frozen=True)
class AnalysisParameters:
    first: int = 0                 # first sample of the integrated range
    last: int = 4                  # last sample of the integrated range (inclusive)
    avg_window: int = 5            # pings either side used to smooth each ping
    detection_window: int = 1      # candidate phases summed per score (odd)
    search: int = PERIOD           # maximum pings per channel to examine
    skip: int = 10                 # pings to ignore at the start
    algorithm: Algorithm = Algorithm.LINEAR

    def sanitised(self) -> 'AnalysisParameters':
        """Clamp the parameters to usable values."""
        first = max(self.first, 0)
        last = max(self.last, first)
        window = max(self.detection_window, 1) | 1
        search = self.search if self.search >= window else PERIOD
        return replace(self, first=first, last=last, detection_window=window, search=search,
                       skip=max(self.skip, 0), algorithm=Algorithm(self.algorithm))

    @property
    def samples(self) -> int:
        """Number of samples integrated per ping."""
        return self.last - self.first + 1


@dataclass(frozen=True)
class NotDetected:
    """A flat mean fits the data better than any triangle wave."""


@dataclass(frozen=True)
class Ambiguous:
    """Several phases fit equally well."""
    count: int    # phases tied with the first best one
    phase: int    # first of the equally ranked phases

    @property
    def candidates(self) -> int:
        return self.count + 1


@dataclass(frozen=True)
class Estimate:
    """Best phase for the first ping, and the phase reached at the end of the file."""
    phase: int
    final: int
    reliable: bool = True


@dataclass(frozen=True)
class Range:
    """The data lies on one slope of the wave, so only a range of phases fits."""
    low: int
    high: int
    final_low: int
    final_high: int


PhaseResult = Union[NotDetected, Ambiguous, Estimate, Range]


@dataclass
class FileSummary:
    """Statistics gathered the first time a file is scanned."""
    path: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    first_position: Optional[Tuple[float, float]] = None   # latitude, longitude
    last_position: Optional[Tuple[float, float]] = None
    north: Optional[float] = None
    south: Optional[float] = None
    east: Optional[float] = None
    west: Optional[float] = None
    min_samples: Optional[int] = None
    max_samples: Optional[int] = None
    ping_totals: Dict[int, int] = field(default_factory=dict)

    def add_position(self, latitude: float, longitude: float):
        if self.first_position is None:
            self.first_position = (latitude, longitude)
            self.north = self.south = latitude
            self.east = self.west = longitude
        else:
            self.north = max(self.north, latitude)
            self.south = min(self.south, latitude)
            self.east = max(self.east, longitude)
            self.west = min(self.west, longitude)
        self.last_position = (latitude, longitude)

    def add_sample_count(self, count: int):
        self.min_samples = count if self.min_samples is None else min(self.min_samples, count)
        self.max_samples = count if self.max_samples is None else max(self.max_samples, count)


class ChainFile:
    """
    One file of an analysis chain.

    Keeps the file's summary between analyses so a repeated analysis with a
    large skip can step over the file without reading it.
    """

    def __init__(self, path: str):
        self.path = path
        self.summary: Optional[FileSummary] = None

    @property
    def ping_totals(self) -> Optional[Dict[int, int]]:
        return self.summary.ping_totals if self.summary is not None else None

    def __repr__(self) -> str:
        return f"ChainFile({self.path!r})"


@dataclass
class ChainStatistics:
    """Per-channel ping values retained from a chain of files."""
    search: int
    pings: Dict[int, int] = field(default_factory=dict)
    null_pings: Dict[int, int] = field(default_factory=dict)
    integrate: Dict[int, int] = field(default_factory=dict)
    values: Dict[int, np.ndarray] = field(default_factory=dict)

    def add(self, channel: int, value: Optional[int]):
        """Retain one ping; None marks a ping with too few samples."""
        if channel not in self.values:
            self.values[channel] = np.zeros(self.search, dtype=np.int64)
            self.pings[channel] = 0
            self.null_pings[channel] = 0
            self.integrate[channel] = 0

        index = self.pings[channel]
        if value is None:
            self.values[channel][index] = 0
            self.null_pings[channel] += 1
        else:
            self.values[channel][index] = value
            self.integrate[channel] += value
        self.pings[channel] = index + 1

    @property
    def max_pings(self) -> int:
        return max(self.pings.values(), default=0)

    def satisfied(self, channels) -> bool:
        return all(self.pings.get(c, 0) >= self.search for c in channels)


def _scan_file(entry: ChainFile, params: AnalysisParameters, skip: int,
               stats: ChainStatistics) -> Dict[int, int]:
    """Add one file's pings to stats; returns the file's per-channel ping totals."""
    totals: Dict[int, int] = defaultdict(int)
    summary = FileSummary(entry.path) if entry.summary is None else None
    last_telegram = None

    with TelegramFile(entry.path) as source:
        for telegram in source:
            last_telegram = telegram
            if isinstance(telegram, RawTelegram):
                try:
                    channel = telegram.channel
                    sample_count = telegram.sample_count
                except DecodeError as e:
                    logger.warning(f"{entry.path}: RAW telegram at offset {telegram.file_offset} "
                                   f"skipped: {e}")
                    continue

                totals[channel] += 1
                if totals[channel] > skip and stats.pings.get(channel, 0) < params.search:
                    try:
                        value = telegram.sample_sum(params.first, params.last)
                    except DecodeError as e:
                        logger.warning(f"{entry.path}: ping {totals[channel]} on channel {channel} "
                                       f"counted as null: {e}")
                        value = None
                    stats.add(channel, value)
                elif summary is None and stats.satisfied(entry.summary.ping_totals):
                    break

                if summary is not None:
                    summary.add_sample_count(sample_count)

            elif summary is not None and isinstance(telegram, NmeaTelegram) and telegram.has_position:
                summary.add_position(telegram.fix.latitude, telegram.fix.longitude)

        if summary is not None:
            summary.start_time = source.start_time

    if summary is None:
        return entry.summary.ping_totals

    if last_telegram is not None:
        summary.end_time = last_telegram.timestamp
    summary.ping_totals = dict(totals)
    entry.summary = summary
    logger.info(f"{entry.path}: {summary.start_time} to {summary.end_time}, "
                f"pings {summary.ping_totals}, samples {summary.min_samples}-{summary.max_samples}")
    return summary.ping_totals


def collect_statistics(chain: Sequence[ChainFile], params: AnalysisParameters) -> ChainStatistics:
    """
    Gather ping values from a chain of files.

    Pings after the first skip on each channel are retained until search
    pings have been collected on some channel. When a file runs out first,
    gathering continues into the next file with skip reduced by the pings
    the file held.

    Raises:
        OSError, FramingError: on any failure to read a file
    """
    stats = ChainStatistics(search=params.search)
    skip = params.skip

    for entry in chain:
        totals = entry.ping_totals
        if totals is not None and skip > 0:
            skippable = [totals[c] for c in sorted(totals) if 0 < totals[c] <= skip]
            if skippable:
                logger.debug(f"Skipping {entry.path}: {skippable[0]} pings <= skip {skip}")
                skip -= skippable[0]
                continue

        file_totals = _scan_file(entry, params, skip, stats)
        if params.search <= stats.max_pings:
            break
        skip = max(skip - max(file_totals.values(), default=0), 0)

    return stats


def smooth(values: np.ndarray, avg_window: int) -> np.ndarray:
    """
    Weighted running mean of ping values.

    Each value is averaged with up to avg_window - 1 neighbours either side,
    weighted 1 / (1 + distance). Zero values are missing and not used.
    """
    total = values.astype(np.float64)
    weights = np.ones(len(values))
    present = values != 0

    for i in range(1, avg_window):
        if i >= len(values):
            break
        weight = 1.0 / (1.0 + i)
        # neighbour before, then neighbour after
        total[i:] += np.where(present[:-i], values[:-i] / (1.0 + i), 0.0)
        weights[i:] += np.where(present[:-i], weight, 0.0)
        total[:-i] += np.where(present[i:], values[i:] / (1.0 + i), 0.0)
        weights[:-i] += np.where(present[i:], weight, 0.0)

    return total / weights


def mean_adjustment(max_pings: int, skip: int, samples: int) -> np.ndarray:
    """
    Contribution of an incomplete final wave cycle to the mean, per phase.

    Zero when the pings cover whole cycles of the wave.
    """
    leftover = max_pings % PERIOD
    if leftover == 0:
        return np.zeros(PERIOD)

    cumulative = np.concatenate(([0], np.cumsum(np.tile(WAVE, 2))))
    start = (np.arange(PERIOD) + skip) % PERIOD
    sums = cumulative[start + leftover] - cumulative[start]
    return sums * (samples / max_pings)


def channel_deviation(values: np.ndarray, count: int, mean: float, adjmean: np.ndarray,
                      params: AnalysisParameters) -> Tuple[np.ndarray, float]:
    """
    Summed deviation of one channel's pings from each candidate wave.

    Args:
        values: Retained ping values, zero for missing pings
        count: Number of pings to use
        mean: Mean ping value of the channel
        adjmean: Output of mean_adjustment()
        params: Sanitised analysis parameters

    Returns:
        (deviation per phase, deviation from the flat mean)
    """
    weigh = WEIGHTINGS[params.algorithm]
    n = params.samples
    smoothed = smooth(values, params.avg_window)
    phases = np.arange(PERIOD)
    baseline = mean - adjmean

    deviation = np.zeros(PERIOD)
    zero_deviation = 0.0
    for v in range(count):
        if values[v] == 0:
            continue
        ping = params.skip + v
        model = baseline + n * WAVE[(ping + phases) % PERIOD]
        deviation += weigh(np.abs(smoothed[v] - model))
        zero_deviation += float(weigh(abs(mean - float(values[v]))))

    return deviation, zero_deviation


def best_fit(deviation: np.ndarray, detection_window: int) -> Tuple[int, float, int]:
    """
    Find the window of phases with the smallest summed deviation.

    Returns:
        (phase at the centre of the best window, its score, number of other
        windows with exactly the same score). The first best window wins.
    """
    scores = np.zeros(PERIOD)
    for w in range(detection_window):
        scores += np.roll(deviation, -w)

    minimum = scores.min()
    tied = scores == minimum
    best = int(np.argmax(tied))
    ties = int(np.count_nonzero(tied)) - 1
    return (best + detection_window // 2) % PERIOD, float(minimum), ties


def _near_turning_point(phase: int) -> bool:
    return any(turn - TURNING_POINT_MARGIN < phase < turn + TURNING_POINT_MARGIN
               for turn in (TURN_UP, TURN_DOWN))


def classify(initial: int, minimum: float, zero_deviation: float, ties: int, max_pings: int,
             detection_window: int, file_pings: Optional[int] = None) -> PhaseResult:
    """
    Decide how far the best fit can be trusted.

    Args:
        initial: Best phase of the first ping
        minimum: Window score of the best phase
        zero_deviation: Deviation of the pings from a flat mean
        ties: Other phases with the same score
        max_pings: Pings examined on the busiest channel
        detection_window: Phases summed per window score
        file_pings: Pings on this channel in the file, default max_pings

    Returns:
        NotDetected, Ambiguous, Estimate or Range; the first matching case wins
    """
    final = (initial + (max_pings if file_pings is None else file_pings)) % PERIOD

    if zero_deviation * detection_window < minimum:
        return NotDetected()
    if ties > 0:
        return Ambiguous(count=ties, phase=initial)

    if max_pings < HALF:
        if _near_turning_point(initial) or _near_turning_point(final):
            return Estimate(phase=initial, final=final, reliable=False)
        # all data on the falling slope
        if TURN_UP < initial < final < TURN_DOWN:
            return Range(low=TURN_UP, high=TURN_DOWN - max_pings,
                         final_low=TURN_UP + max_pings, final_high=TURN_DOWN)
        # all data on the rising slope, across the wrap
        if TURN_DOWN < initial and final < TURN_UP:
            return Range(low=TURN_DOWN, high=(TURN_UP - max_pings) % PERIOD,
                         final_low=(TURN_DOWN + max_pings) % PERIOD, final_high=TURN_UP)

    return Estimate(phase=initial, final=final, reliable=True)


@dataclass
class ChannelAnalysis:
    channel: int
    result: PhaseResult
    pings: int
    null_pings: int
    mean: float
    score: float
    zero_score: float
    deviation: Optional[np.ndarray] = None


@dataclass
class AnalysisReport:
    parameters: AnalysisParameters
    max_pings: int
    channels: Dict[int, ChannelAnalysis]
    summaries: List[FileSummary]

    def results(self) -> Dict[int, PhaseResult]:
        return {channel: analysis.result for channel, analysis in self.channels.items()}


def search_phase(chain: Sequence[ChainFile], params: AnalysisParameters) -> AnalysisReport:
    """Run the phase search over a chain with the given parameters."""
    params = params.sanitised()
    stats = collect_statistics(chain, params)
    max_pings = stats.max_pings
    adjmean = mean_adjustment(max_pings, params.skip, params.samples)
    first_totals = chain[0].ping_totals if chain else None

    channels = {}
    for channel in sorted(stats.pings):
        pings = stats.pings[channel]
        null_pings = stats.null_pings[channel]
        if pings == null_pings:
            logger.warning(f"Channel {channel}: no pings with samples {params.first}-{params.last}")
            channels[channel] = ChannelAnalysis(channel, NotDetected(), pings, null_pings,
                                                math.nan, math.nan, math.nan)
            continue

        mean = stats.integrate[channel] / (pings - null_pings)
        deviation, zero_deviation = channel_deviation(stats.values[channel], min(pings, max_pings),
                                                      mean, adjmean, params)
        initial, minimum, ties = best_fit(deviation, params.detection_window)
        file_pings = first_totals.get(channel) if first_totals else None
        result = classify(initial, minimum, zero_deviation, ties, max_pings,
                          params.detection_window, file_pings)

        logger.info(f"Channel {channel}: {result} (pings {pings}, null {null_pings}, "
                    f"score {minimum:.1f}, flat {zero_deviation * params.detection_window:.1f})")
        channels[channel] = ChannelAnalysis(channel, result, pings, null_pings, mean,
                                            minimum, zero_deviation, deviation)

    summaries = [entry.summary for entry in chain if entry.summary is not None]
    return AnalysisReport(params, max_pings, channels, summaries)


def analyse(chain: Sequence[Union[str, ChainFile]], first: int = 0, last: int = 4, avg_window: int = 5,
            detection_window: int = 1, search: int = PERIOD, skip: int = 10,
            algorithm: Union[Algorithm, str] = Algorithm.LINEAR) -> AnalysisReport:
    """
    Estimate the phase of the triangle wave in a file or chain of files.

    Args:
        chain: File paths in survey order, or ChainFile objects to reuse
            summaries between analyses
        first: First sample of the integrated range
        last: Last sample of the integrated range
        avg_window: Pings either side used to smooth each ping
        detection_window: Candidate phases summed per score, forced odd
        search: Maximum pings per channel to examine
        skip: Pings to ignore at the start of the chain
        algorithm: Deviation weighting: linear, square, sqrt or log1p

    Returns:
        AnalysisReport with a result for each channel that had data

    Raises:
        OSError, FramingError: if any file of the chain cannot be read
    """
    entries = [c if isinstance(c, ChainFile) else ChainFile(c) for c in chain]
    params = AnalysisParameters(first=first, last=last, avg_window=avg_window,
                                detection_window=detection_window, search=search, skip=skip,
                                algorithm=Algorithm(algorithm))
    return search_phase(entries, params)
