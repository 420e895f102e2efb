#!/usr/bin/env python3
"""
NMEA 0183 sentences logged in NME0 telegrams.

Only the fields needed to place pings in time and space are decoded:
GGA, GLL, RMC and ZDA for time and position, and the CSIRO RPY sentence for
roll and pitch. Anything else is kept as an undecoded sentence.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import List, Optional

from pyproj import Geod


logger = logging.getLogger(__name__)

METRES_PER_NAUTICAL_MILE = 1852.0

# Telegrams closer together than this belong to the same navigation point
POINT_TIME_WINDOW_SECONDS = 5.0

WGS84 = Geod(ellps='WGS84')


@dataclass
class NmeaFix:
    """Fields decoded from one NMEA sentence. Missing fields are None."""
    sentence_type: str = ''
    fix_date: Optional[date] = None
    fix_time: Optional[time] = None
    latitude: Optional[float] = None    # degrees, +ve north
    longitude: Optional[float] = None   # degrees, +ve east
    valid: bool = True                  # RMC status flag
    speed_knots: Optional[float] = None
    course: Optional[float] = None      # degrees true
    roll: Optional[float] = None        # degrees
    pitch: Optional[float] = None       # degrees

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def has_time(self) -> bool:
        return self.fix_time is not None

    @property
    def has_date(self) -> bool:
        return self.fix_date is not None

    def fix_datetime(self) -> Optional[datetime]:
        """UTC date and time of the fix, if the sentence carried both."""
        if self.fix_date is None or self.fix_time is None:
            return None
        return datetime.combine(self.fix_date, self.fix_time, tzinfo=timezone.utc)


def sentence_type(sentence: str) -> str:
    """Three letter sentence type following the talker id, e.g. 'GGA'."""
    if len(sentence) < 6:
        return ''
    return sentence[3:6]


def parse_sentence(sentence: str) -> NmeaFix:
    """
    Decode an NMEA sentence.

    Fields that fail to parse are left as None; the failure is logged at
    debug level since loggers regularly write truncated sentences.
    """
    fix = NmeaFix(sentence_type=sentence_type(sentence))
    parser = _PARSERS.get(fix.sentence_type)
    if parser is None:
        return fix

    parts = sentence.split('*')[0].split(',')
    try:
        parser(parts, fix)
    except (ValueError, IndexError) as e:
        logger.debug(f"Failed to parse {fix.sentence_type}: {e} in {sentence!r}")
    return fix


def _parse_time(value: str) -> time:
    """hhmmss.sss to time, to the millisecond."""
    milliseconds = int(round(float(value) * 1000))
    return time(milliseconds // 10000000,
                (milliseconds // 100000) % 100,
                (milliseconds // 1000) % 100,
                (milliseconds % 1000) * 1000)


def _parse_degrees(value: str, hemisphere: str, negative: str) -> float:
    """[d]ddmm.mmmm and hemisphere letter to signed decimal degrees."""
    raw = float(value)
    degrees = int(raw / 100) + (raw % 100) / 60.0
    if hemisphere == negative:
        degrees = -degrees
    return degrees


def _parse_position(parts: List[str], start: int, fix: NmeaFix):
    latitude = _parse_degrees(parts[start], parts[start + 1], 'S')
    longitude = _parse_degrees(parts[start + 2], parts[start + 3], 'W')
    fix.latitude = latitude
    fix.longitude = longitude


def _parse_gga(parts: List[str], fix: NmeaFix):
    """$GPGGA,hhmmss.ss,ddmm.mmmm,n,dddmm.mmmm,e,..."""
    fix.fix_time = _parse_time(parts[1])
    _parse_position(parts, 2, fix)


def _parse_gll(parts: List[str], fix: NmeaFix):
    """$GPGLL,ddmm.mmmm,n,dddmm.mmmm,e,..."""
    _parse_position(parts, 1, fix)


def _parse_rmc(parts: List[str], fix: NmeaFix):
    """$GPRMC,hhmmss.ss,A,ddmm.mmmm,n,dddmm.mmmm,e,s.s,c.c,ddmmyy,..."""
    fix_time = _parse_time(parts[1])
    fix.valid = parts[2] == 'A'
    _parse_position(parts, 3, fix)
    if parts[7]:
        fix.speed_knots = float(parts[7])
    if parts[8]:
        fix.course = float(parts[8])
    ddmmyy = int(parts[9])
    fix.fix_date = date(2000 + ddmmyy % 100, (ddmmyy // 100) % 100, ddmmyy // 10000)
    fix.fix_time = fix_time


def _parse_zda(parts: List[str], fix: NmeaFix):
    """$GPZDA,hhmmss.ss,dd,mm,yyyy,..."""
    fix_time = _parse_time(parts[1])
    fix.fix_date = date(int(parts[4]), int(parts[3]), int(parts[2]))
    fix.fix_time = fix_time


def _parse_rpy(parts: List[str], fix: NmeaFix):
    """$??RPY,roll,pitch,..."""
    fix.roll = float(parts[1])
    fix.pitch = float(parts[2])


_PARSERS = {
    'GGA': _parse_gga,
    'GLL': _parse_gll,
    'RMC': _parse_rmc,
    'ZDA': _parse_zda,
    'RPY': _parse_rpy,
}


def distance(latitude1: float, longitude1: float, latitude2: float, longitude2: float) -> float:
    """Geodesic distance in metres between two positions on the WGS84 ellipsoid."""
    _, _, metres = WGS84.inv(longitude1, latitude1, longitude2, latitude2)
    return metres


@dataclass
class TrackPoint:
    """Position fix with the speed made good since the previous fix."""
    time: datetime
    latitude: float
    longitude: float
    speed_knots: Optional[float]


class TrackAccumulator:
    """
    Turns a sequence of NMEA telegrams into track points with speeds.

    The previous fix is carried here rather than on the telegrams, so one
    accumulator belongs to one pass over one file (or chain of files).
    """

    def __init__(self):
        self.last_time: Optional[datetime] = None
        self.last_latitude: Optional[float] = None
        self.last_longitude: Optional[float] = None

    def update(self, telegram) -> Optional[TrackPoint]:
        """
        Add an NMEA telegram to the track.

        Args:
            telegram: NmeaTelegram; its telegram time is used, not the NMEA time

        Returns:
            TrackPoint for a position-bearing telegram, None otherwise. The
            first point has speed 0; a point at the same time as the previous
            one has no speed.
        """
        fix = telegram.fix
        if not fix.has_position:
            return None

        when = telegram.timestamp
        if self.last_time is None:
            speed = 0.0
        else:
            seconds = abs((when - self.last_time).total_seconds())
            if seconds == 0:
                speed = None
            else:
                metres = distance(self.last_latitude, self.last_longitude, fix.latitude, fix.longitude)
                speed = metres / METRES_PER_NAUTICAL_MILE / (seconds / 3600.0)

        self.last_time = when
        self.last_latitude = fix.latitude
        self.last_longitude = fix.longitude
        return TrackPoint(time=when, latitude=fix.latitude, longitude=fix.longitude, speed_knots=speed)
