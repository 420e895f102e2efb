#!/usr/bin/env python3
"""
ES60 .raw Telegram Structures

Python implementation of the telegrams written by the Simrad ES60 echo
sounder. Every telegram is framed on disk as:

    int32 length | 12-byte header | payload (length - 12 bytes) | int32 length

The header holds a 4-byte ASCII type tag followed by the time as a 64-bit
count of 100 ns ticks since 1601-01-01, stored as two 32-bit halves (low,
high). The ES60 writes big-endian, but files converted on other systems may
be little-endian; the type tag is always stored as plain ASCII.

Payloads are decoded lazily: a telegram keeps its raw bytes and only splits
them into fields on first access.
"""

import math
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

import numpy as np

from .exceptions import DecodeError
from .nmea import NmeaFix, parse_sentence, sentence_type


# Byte orders, as struct format prefixes
BIG_ENDIAN = '>'
LITTLE_ENDIAN = '<'

# Seconds between the tick epoch (1601-01-01) and the POSIX epoch
EPOCH_OFFSET_SECONDS = 11644473600
TICKS_PER_MILLISECOND = 10000
TICKS_PER_SECOND = 10000000
TICKS_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc) - timedelta(seconds=EPOCH_OFFSET_SECONDS)

# Power samples are stored as 10*log10(power) scaled by 256/log10(2)
POWER_TO_DB = 10.0 * math.log10(2.0) / 256.0


class TelegramType(Enum):
    """Telegram type tags."""
    CONFIG = b'CON0'
    NMEA = b'NME0'
    RAW = b'RAW0'
    ANNOTATION = b'TAG0'
    DEPTH = b'DEP0'
    UNKNOWN = b''


_TYPES_BY_TAG = {t.value: t for t in TelegramType if t is not TelegramType.UNKNOWN}


@dataclass
class TelegramHeader:
    """
    12-byte header at the start of every telegram.

    Structure:
    - 4 bytes: type tag (ASCII, never byte-swapped)
    - 4 bytes: time, low 32 bits
    - 4 bytes: time, high 32 bits
    """
    type_tag: bytes   # e.g. b'RAW0'
    ticks: int        # uint64 - 100 ns ticks since 1601-01-01 UTC

    SIZE = 12

    @classmethod
    def from_bytes(cls, data: bytes, byte_order: str = BIG_ENDIAN) -> 'TelegramHeader':
        """Parse TelegramHeader from 12-byte buffer."""
        if len(data) < cls.SIZE:
            raise DecodeError(f"Buffer too small: expected {cls.SIZE}, got {len(data)}")

        low, high = struct.unpack(byte_order + 'II', data[4:12])
        return cls(type_tag=bytes(data[0:4]), ticks=(high << 32) | low)

    def to_bytes(self, byte_order: str = BIG_ENDIAN) -> bytes:
        """Encode the header, swapping the time halves for little-endian files."""
        return self.type_tag + struct.pack(byte_order + 'II',
                                           self.ticks & 0xFFFFFFFF,
                                           (self.ticks >> 32) & 0xFFFFFFFF)

    @property
    def timestamp(self) -> datetime:
        """Telegram time in UTC, truncated to the millisecond."""
        return TICKS_EPOCH + timedelta(milliseconds=self.ticks // TICKS_PER_MILLISECOND)

    @property
    def remainder(self) -> int:
        """Sub-millisecond part of the time in 100 ns ticks."""
        return self.ticks % TICKS_PER_MILLISECOND

    @property
    def posix_time(self) -> float:
        """Telegram time as seconds since 1970-01-01."""
        return self.ticks / TICKS_PER_SECOND - EPOCH_OFFSET_SECONDS

    def set_timestamp(self, when: datetime):
        """
        Replace the millisecond part of the time, keeping the 100 ns remainder.

        Args:
            when: New time. Naive datetimes are taken as UTC.
        """
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        milliseconds = (when - TICKS_EPOCH) // timedelta(milliseconds=1)
        self.ticks = milliseconds * TICKS_PER_MILLISECOND + self.remainder


class Telegram:
    """
    One framed record from an ES60 file.

    Holds the header and the undecoded payload. Subclasses for the known
    types add typed accessors; decoding happens once, on first access, and
    the result is cached until the payload is mutated.
    """

    def __init__(self, header: TelegramHeader, payload: Optional[bytes],
                 byte_order: str = BIG_ENDIAN, file_offset: Optional[int] = None):
        """
        Args:
            header: Parsed telegram header
            payload: Payload bytes, or None when the payload was skipped
            byte_order: BIG_ENDIAN or LITTLE_ENDIAN, as read from the file
            file_offset: Byte position of the length prefix in the file
        """
        self.header = header
        self.payload = bytearray(payload) if payload is not None else None
        self.byte_order = byte_order
        self.file_offset = file_offset
        self._decoded = None
        self._is_decoded = False

    @staticmethod
    def create(header: TelegramHeader, payload: Optional[bytes],
               byte_order: str = BIG_ENDIAN, file_offset: Optional[int] = None) -> 'Telegram':
        """Build the telegram subclass matching the header's type tag."""
        telegram_class = TELEGRAM_CLASSES.get(header.type_tag, Telegram)
        return telegram_class(header, payload, byte_order, file_offset)

    @property
    def type(self) -> TelegramType:
        return _TYPES_BY_TAG.get(self.header.type_tag, TelegramType.UNKNOWN)

    @property
    def timestamp(self) -> datetime:
        return self.header.timestamp

    @property
    def length(self) -> int:
        """Value of the framing length fields (header plus payload)."""
        return TelegramHeader.SIZE + len(self._require_payload())

    @property
    def has_payload(self) -> bool:
        return self.payload is not None

    def decode(self):
        """Return the decoded payload, decoding it on first call."""
        if not self._is_decoded:
            self._decoded = self._decode()
            self._is_decoded = True
        return self._decoded

    def _decode(self):
        # Unknown telegrams stay opaque
        return None

    def _invalidate(self):
        self._decoded = None
        self._is_decoded = False

    def _require_payload(self) -> bytearray:
        if self.payload is None:
            raise DecodeError(f"{self.header.type_tag!r} telegram was read without its payload")
        return self.payload

    def __repr__(self) -> str:
        size = len(self.payload) if self.payload is not None else None
        return (f"{self.__class__.__name__}(type={self.type.name}, time={self.timestamp.isoformat()}, "
                f"payload={size}, offset={self.file_offset})")


@dataclass
class Transducer:
    """320-byte transducer description inside a CON0 telegram."""
    channel_id: str
    beam_type: int
    frequency: float               # Hz
    gain: float                    # dB
    equivalent_beam_angle: float   # dB re 1 steradian
    beam_width_alongship: float    # degrees
    beam_width_athwartship: float  # degrees
    angle_sensitivity_alongship: float
    angle_sensitivity_athwartship: float
    angle_offset_alongship: float
    angle_offset_athwartship: float
    position: tuple                # x, y, z
    direction: tuple               # x, y, z
    pulse_length_table: tuple      # 5 pulse lengths (s)
    gain_table: tuple              # gain for each pulse length
    sa_correction_table: tuple     # Sa correction for each pulse length

    SIZE = 320

    @classmethod
    def from_bytes(cls, data: bytes, byte_order: str = BIG_ENDIAN) -> 'Transducer':
        """Parse Transducer from 320-byte buffer."""
        if len(data) < cls.SIZE:
            raise DecodeError(f"Buffer too small: expected {cls.SIZE}, got {len(data)}")

        channel_id = _decode_string(data[0:128])
        beam_type = struct.unpack_from(byte_order + 'i', data, 128)[0]
        values = struct.unpack_from(byte_order + '15f', data, 132)
        pulse_lengths = struct.unpack_from(byte_order + '5f', data, 192)
        gains = struct.unpack_from(byte_order + '5f', data, 220)
        sa_corrections = struct.unpack_from(byte_order + '5f', data, 248)

        return cls(
            channel_id=channel_id,
            beam_type=beam_type,
            frequency=values[0],
            gain=values[1],
            equivalent_beam_angle=values[2],
            beam_width_alongship=values[3],
            beam_width_athwartship=values[4],
            angle_sensitivity_alongship=values[5],
            angle_sensitivity_athwartship=values[6],
            angle_offset_alongship=values[7],
            angle_offset_athwartship=values[8],
            position=values[9:12],
            direction=values[12:15],
            pulse_length_table=pulse_lengths,
            gain_table=gains,
            sa_correction_table=sa_corrections
        )


@dataclass
class Configuration:
    """
    CON0 payload: survey description and transducer table.

    Structure:
    - 128 bytes: survey name
    - 128 bytes: transect name
    - 128 bytes: sounder name
    - 128 bytes: spare
    - 4 bytes: transducer count
    - count x 320 bytes: Transducer
    """
    survey_name: str
    transect_name: str
    sounder_name: str
    transducers: List[Transducer]

    HEADER_SIZE = 516

    @classmethod
    def from_bytes(cls, data: bytes, byte_order: str = BIG_ENDIAN) -> 'Configuration':
        """Parse Configuration, checking the length against the transducer count."""
        if len(data) < cls.HEADER_SIZE:
            raise DecodeError(f"Buffer too small: expected {cls.HEADER_SIZE}, got {len(data)}")

        count = struct.unpack_from(byte_order + 'i', data, 512)[0]
        expected = cls.HEADER_SIZE + count * Transducer.SIZE
        if count < 0 or len(data) != expected:
            raise DecodeError(f"CON0 length {len(data)} does not match {count} transducers "
                              f"(expected {expected})")

        transducers = []
        for i in range(count):
            start = cls.HEADER_SIZE + i * Transducer.SIZE
            transducers.append(Transducer.from_bytes(data[start:start + Transducer.SIZE], byte_order))

        return cls(
            survey_name=_decode_string(data[0:128]),
            transect_name=_decode_string(data[128:256]),
            sounder_name=_decode_string(data[256:384]),
            transducers=transducers
        )

    def transducer(self, channel: int) -> Transducer:
        """Transducer for a 1-based channel number."""
        if channel < 1 or channel > len(self.transducers):
            raise IndexError(f"Channel {channel} not in configuration (1-{len(self.transducers)})")
        return self.transducers[channel - 1]

    def gain(self, channel: int, pulse_length: float) -> float:
        """Gain for a channel at one of its configured pulse lengths, NaN if not configured."""
        transducer = self.transducer(channel)
        for length, gain in zip(transducer.pulse_length_table, transducer.gain_table):
            if length == pulse_length:
                return gain
        return math.nan

    def sa_correction(self, channel: int, pulse_length: float) -> float:
        """Sa correction for a channel at one of its configured pulse lengths, NaN if not configured."""
        transducer = self.transducer(channel)
        for length, correction in zip(transducer.pulse_length_table, transducer.sa_correction_table):
            if length == pulse_length:
                return correction
        return math.nan

    def beam_angle(self, channel: int) -> float:
        return self.transducer(channel).equivalent_beam_angle


class ConfigTelegram(Telegram):
    """CON0 telegram. Always the first telegram of an ES60 file."""

    @property
    def transducer_count(self) -> int:
        """Number of transducers, read without decoding the transducer table."""
        payload = self._require_payload()
        if len(payload) < Configuration.HEADER_SIZE:
            raise DecodeError(f"CON0 payload too small: {len(payload)} bytes")
        return struct.unpack_from(self.byte_order + 'i', payload, 512)[0]

    @property
    def configuration(self) -> Configuration:
        return self.decode()

    def _decode(self) -> Configuration:
        return Configuration.from_bytes(self._require_payload(), self.byte_order)


class NmeaTelegram(Telegram):
    """NME0 telegram holding one ASCII NMEA 0183 sentence."""

    @property
    def sentence(self) -> str:
        return self._require_payload().split(b'\x00')[0].decode('ascii', errors='replace').strip()

    @property
    def sentence_type(self) -> str:
        """Three letter sentence type, e.g. 'GGA' for '$GPGGA,...'."""
        return sentence_type(self.sentence)

    @property
    def fix(self) -> NmeaFix:
        return self.decode()

    @property
    def has_position(self) -> bool:
        return self.fix.has_position

    @property
    def has_time(self) -> bool:
        return self.fix.has_time

    @property
    def has_date(self) -> bool:
        return self.fix.has_date

    def _decode(self) -> NmeaFix:
        return parse_sentence(self.sentence)


@dataclass
class RawPing:
    """
    RAW0 payload: one ping on one channel.

    Structure:
    - 72 bytes: ping header (channel, mode, instrument fields, sample offset, count)
    - count x int16: power samples
    - count x int16: angle words (optional, alongship in the high byte)
    """
    channel: int
    mode: int
    transducer_depth: float        # m
    frequency: float               # Hz
    transmit_power: float          # W
    pulse_length: float            # s
    bandwidth: float               # Hz
    sample_interval: float         # s
    sound_velocity: float          # m/s
    absorption_coefficient: float  # dB/m
    heave: float                   # m
    roll: float                    # degrees
    pitch: float                   # degrees
    temperature: float             # degrees C
    trawl_upper_depth_valid: int
    trawl_opening_valid: int
    trawl_upper_depth: float       # m
    trawl_opening: float           # m
    sample_offset: int
    sample_count: int
    power: np.ndarray              # int16 samples
    alongship: Optional[np.ndarray] = None    # int8 electrical angles
    athwartship: Optional[np.ndarray] = None  # int8 electrical angles

    HEADER_SIZE = 72
    HEADER_FORMAT = 'hh12fhhffii'

    @classmethod
    def from_bytes(cls, data: bytes, byte_order: str = BIG_ENDIAN) -> 'RawPing':
        """Parse RawPing, checking the payload length against the sample count."""
        if len(data) < cls.HEADER_SIZE:
            raise DecodeError(f"Buffer too small: expected {cls.HEADER_SIZE}, got {len(data)}")

        values = struct.unpack_from(byte_order + cls.HEADER_FORMAT, data, 0)
        count = values[19]
        power_end = cls.HEADER_SIZE + 2 * count
        if count < 0 or len(data) not in (power_end, cls.HEADER_SIZE + 4 * count):
            raise DecodeError(f"RAW0 length {len(data)} does not match {count} samples "
                              f"(expected {power_end} or {cls.HEADER_SIZE + 4 * count})")

        power = np.frombuffer(data, dtype=byte_order + 'i2', count=count,
                              offset=cls.HEADER_SIZE).astype(np.int16)

        alongship = None
        athwartship = None
        if count > 0 and len(data) == cls.HEADER_SIZE + 4 * count:
            words = np.frombuffer(data, dtype=byte_order + 'u2', count=count, offset=power_end)
            alongship = (words >> 8).astype(np.uint8).view(np.int8)
            athwartship = (words & 0xFF).astype(np.uint8).view(np.int8)

        return cls(*values[:20], power=power, alongship=alongship, athwartship=athwartship)

    @property
    def has_angles(self) -> bool:
        return self.alongship is not None

    def power_db(self) -> np.ndarray:
        """Power samples converted to dB."""
        return self.power.astype(np.float64) * POWER_TO_DB


class RawTelegram(Telegram):
    """
    RAW0 telegram: sample data for one ping on one channel.

    Channel, sample count and sample sums are read straight from the payload
    so statistics gathering never needs a full decode.
    """

    @property
    def channel(self) -> int:
        return struct.unpack_from(self.byte_order + 'h', self._header_bytes(), 0)[0]

    @property
    def sample_count(self) -> int:
        return struct.unpack_from(self.byte_order + 'i', self._header_bytes(), 68)[0]

    @property
    def ping(self) -> RawPing:
        return self.decode()

    def power_view(self) -> np.ndarray:
        """
        Writable int16 view of the power samples inside the payload.

        Raises:
            DecodeError: if the payload is too short for the declared count
        """
        payload = self._header_bytes()
        count = self.sample_count
        end = RawPing.HEADER_SIZE + 2 * count
        if count < 0 or len(payload) < end:
            raise DecodeError(f"RAW0 payload of {len(payload)} bytes cannot hold {count} samples")
        return np.frombuffer(payload, dtype=self.byte_order + 'i2', count=count,
                             offset=RawPing.HEADER_SIZE)

    def sample_sum(self, first: int, last: int) -> Optional[int]:
        """
        Sum of power samples first..last inclusive.

        Returns:
            The sum, or None if the ping has too few samples for the range
        """
        if self.sample_count <= last:
            return None
        return int(self.power_view()[first:last + 1].sum(dtype=np.int64))

    def adjust(self, amount: int):
        """Add amount to every power sample in place, wrapping within int16."""
        samples = self.power_view()
        np.add(samples, amount, out=samples, casting='unsafe')
        self._invalidate()

    def _header_bytes(self) -> bytearray:
        payload = self._require_payload()
        if len(payload) < RawPing.HEADER_SIZE:
            raise DecodeError(f"RAW0 payload too small: expected {RawPing.HEADER_SIZE}, got {len(payload)}")
        return payload

    def _decode(self) -> RawPing:
        return RawPing.from_bytes(self._require_payload(), self.byte_order)


TELEGRAM_CLASSES = {
    TelegramType.CONFIG.value: ConfigTelegram,
    TelegramType.NMEA.value: NmeaTelegram,
    TelegramType.RAW.value: RawTelegram,
}


def _decode_string(data: bytes) -> str:
    return bytes(data).split(b'\x00')[0].decode('utf-8', errors='ignore')
