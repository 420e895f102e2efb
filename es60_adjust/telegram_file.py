#!/usr/bin/env python3
"""
ES60 .raw File Access

Reads and writes framed telegrams and detects the byte order of a file.
TelegramFile wraps one file as a read session with optional indexing,
random access and grouping of NMEA telegrams into navigation points.
"""

import io
import os
import struct
import logging
from datetime import datetime
from typing import BinaryIO, Iterator, List, Optional

from .exceptions import DecodeError, EndOfStream, FramingError
from .nmea import POINT_TIME_WINDOW_SECONDS
from .record_index import RecordIndex, RecordIndexBuilder
from .telegram_structures import (BIG_ENDIAN, LITTLE_ENDIAN, ConfigTelegram, NmeaTelegram,
                                  Telegram, TelegramHeader, TelegramType)


def open_byte_order(stream: BinaryIO) -> str:
    """
    Work out the byte order of a file from its first length field.

    A valid first telegram is a small CON0, so its length is a small positive
    number in the right byte order and a huge or negative one in the wrong
    order. The stream position is restored afterwards.

    Returns:
        BIG_ENDIAN or LITTLE_ENDIAN

    Raises:
        FramingError: if the stream holds fewer than 4 bytes
    """
    start = stream.tell()
    data = stream.read(4)
    stream.seek(start)
    if len(data) < 4:
        raise FramingError(f"Cannot determine byte order: first length field has only {len(data)} bytes")

    length = struct.unpack('>i', data)[0]
    swapped = struct.unpack('<i', data)[0]
    if length < 0 or not (swapped < 0 or length < swapped):
        return LITTLE_ENDIAN
    return BIG_ENDIAN


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) < size:
        raise EndOfStream(f"Expected {size} bytes, got {len(data)}")
    return data


def _read_length(stream: BinaryIO, byte_order: str) -> int:
    return struct.unpack(byte_order + 'i', _read_exact(stream, 4))[0]


def read_telegram(stream: BinaryIO, byte_order: str = BIG_ENDIAN, nmea_only: bool = False) -> Telegram:
    """
    Read one framed telegram.

    Reads the length prefix, the header, the payload and the trailing length,
    which must repeat the prefix.

    Args:
        stream: Binary stream positioned at a length prefix
        byte_order: BIG_ENDIAN or LITTLE_ENDIAN
        nmea_only: Skip the payload of anything but NME0 telegrams

    Returns:
        Telegram subclass for the type tag

    Raises:
        EndOfStream: if the stream ends at or inside the telegram
        FramingError: if the length is too small or the trailing length differs
    """
    file_offset = stream.tell() if stream.seekable() else None

    length = _read_length(stream, byte_order)
    if length < TelegramHeader.SIZE:
        raise FramingError(f"Telegram length {length} at offset {file_offset} is shorter than its header")

    header = TelegramHeader.from_bytes(_read_exact(stream, TelegramHeader.SIZE), byte_order)
    payload_size = length - TelegramHeader.SIZE

    if nmea_only and header.type_tag != TelegramType.NMEA.value and stream.seekable():
        stream.seek(payload_size, io.SEEK_CUR)
        payload = None
    else:
        payload = _read_exact(stream, payload_size)

    trailer = _read_length(stream, byte_order)
    if trailer != length:
        raise FramingError(f"Telegram at offset {file_offset}: trailing length {trailer} != {length}")

    return Telegram.create(header, payload, byte_order, file_offset)


def write_telegram(stream: BinaryIO, telegram: Telegram, byte_order: Optional[str] = None):
    """
    Write a telegram with the same framing it was read with.

    Args:
        stream: Binary output stream
        telegram: Telegram holding its payload
        byte_order: Byte order for the framing and header, default the telegram's own

    Raises:
        ValueError: if the telegram has no payload, or a binary payload would
            need converting to another byte order
    """
    order = byte_order or telegram.byte_order
    if telegram.payload is None:
        raise ValueError("Cannot write a telegram that was read without its payload")
    if order != telegram.byte_order and telegram.type is not TelegramType.NMEA:
        raise ValueError(f"Cannot convert a {telegram.type.name} payload to another byte order")

    length = struct.pack(order + 'i', TelegramHeader.SIZE + len(telegram.payload))
    stream.write(length)
    stream.write(telegram.header.to_bytes(order))
    stream.write(telegram.payload)
    stream.write(length)


def is_es60_file(path: str) -> bool:
    """True if the file starts with a CON0 telegram."""
    if not os.path.isfile(path):
        return False
    try:
        with open(path, 'rb') as f:
            data = f.read(8)
    except OSError:
        return False
    return data[4:8] == TelegramType.CONFIG.value


class TelegramFile:
    """
    Read session over one ES60 .raw file.

    Telegrams are read sequentially with read() or by iterating. When opened
    with index=True the offsets of RAW and position-bearing NMEA telegrams are
    collected as the file is read; the index becomes available once the end
    of the file has been reached.
    """

    def __init__(self, path: str, index: bool = False):
        """
        Args:
            path: Path of the .raw file
            index: Build a RecordIndex while reading
        """
        self.path = path
        self.build_index = index
        self.file: Optional[BinaryIO] = None
        self.byte_order: Optional[str] = None
        self.config: Optional[ConfigTelegram] = None
        self.index: Optional[RecordIndex] = None

        self._index_builder: Optional[RecordIndexBuilder] = None
        self._pending_nmea: Optional[NmeaTelegram] = None
        self._start_time: Optional[datetime] = None
        self._end_time: Optional[datetime] = None

        self.logger = logging.getLogger('TelegramFile')

    def open(self) -> 'TelegramFile':
        """
        Open the file and detect its byte order.

        Raises:
            OSError: if the file cannot be opened
            FramingError: if the file is too short to hold a telegram
            DecodeError: if indexing was requested and the file does not start with CON0
        """
        self.file = open(self.path, 'rb')
        try:
            self.byte_order = open_byte_order(self.file)
            self.logger.debug(f"Opened {self.path} ({'big' if self.byte_order == BIG_ENDIAN else 'little'}-endian)")

            if self.build_index and self.index is None:
                first = self._read()
                if not isinstance(first, ConfigTelegram):
                    raise DecodeError(f"{self.path} does not start with a CON0 telegram")
                self._index_builder = RecordIndexBuilder(first.transducer_count)
                self.file.seek(0)
        except Exception:
            self.close()
            raise

        self._pending_nmea = None
        return self

    def close(self):
        if self.file:
            self.file.close()
            self.file = None
            self.logger.debug(f"Closed {self.path}")

    @property
    def is_open(self) -> bool:
        return self.file is not None

    def size(self) -> int:
        return os.path.getsize(self.path)

    def tell(self) -> int:
        return self.file.tell()

    def read(self, nmea_only: bool = False) -> Telegram:
        """
        Read the next telegram, opening the file if needed.

        Args:
            nmea_only: Skip the payloads of anything but NME0 telegrams.
                Ignored while an index is being built.

        Raises:
            EndOfStream: at the end of the file, after sealing any index
        """
        if self.file is None:
            self.open()

        try:
            telegram = self._read(nmea_only and self._index_builder is None)
        except EndOfStream:
            self._seal_index()
            raise

        if self._index_builder is not None:
            self._index_builder.add(telegram)
        return telegram

    def read_at(self, offset: int) -> Telegram:
        """Read the telegram starting at a file offset, e.g. one from the index."""
        if self.file is None:
            self.open()
        self.file.seek(offset)
        return self._read()

    def __iter__(self) -> Iterator[Telegram]:
        while True:
            try:
                yield self.read()
            except EndOfStream:
                return

    def read_point(self, sentence_type: Optional[str] = None) -> Optional[List[NmeaTelegram]]:
        """
        Read the NMEA telegrams describing the next navigation point.

        Telegrams join a point while they are within 5 seconds of its first
        telegram and their sentence type is not already in it. The telegram
        that ends a point is kept and starts the next one. The most useful
        telegram is moved to the front: one with a position, then one with a
        time, then one with a date.

        Args:
            sentence_type: Only consider this sentence type, e.g. 'GGA'

        Returns:
            Telegrams of the point, best first, or None at the end of the file
        """
        point: List[NmeaTelegram] = []
        if self._pending_nmea is not None:
            point.append(self._pending_nmea)
            self._pending_nmea = None

        while True:
            try:
                telegram = self.read(nmea_only=True)
            except EndOfStream:
                fixes = [t.timestamp for t in point if t.has_position]
                if fixes:
                    self._end_time = max(fixes)
                return point or None

            if not isinstance(telegram, NmeaTelegram):
                continue
            if sentence_type and telegram.sentence_type != sentence_type:
                continue

            if not point:
                point.append(telegram)
            elif self._joins_point(point, telegram):
                if self._preferred(telegram, point[0]):
                    point.insert(0, telegram)
                else:
                    point.append(telegram)
            else:
                self._pending_nmea = telegram
                return point

    @staticmethod
    def _joins_point(point: List[NmeaTelegram], telegram: NmeaTelegram) -> bool:
        seconds = abs((telegram.timestamp - point[0].timestamp).total_seconds())
        if seconds >= POINT_TIME_WINDOW_SECONDS:
            return False
        return all(t.sentence_type != telegram.sentence_type for t in point)

    @staticmethod
    def _preferred(telegram: NmeaTelegram, head: NmeaTelegram) -> bool:
        if telegram.has_position and not head.has_position:
            return True
        return ((telegram.has_position or not head.has_position) and
                ((telegram.has_time and not head.has_time) or
                 (telegram.has_date and not head.has_date)))

    @property
    def start_time(self) -> datetime:
        """Time of the first telegram in the file."""
        if self._start_time is None:
            self._start_time = self._time_at(0)
        return self._start_time

    @property
    def end_time(self) -> datetime:
        """
        Time of the last fix in the file.

        Needs the index. Without GPS data the last RAW telegram is used, and
        without an index (or any data) this is the start time.
        """
        if self._end_time is None and self.index is not None:
            fixes = self.index.fix_positions()
            if len(fixes) > 0:
                self._end_time = self._time_at(int(fixes[-1]))
            else:
                self.logger.warning(f"{self.path} has no GPS data")
                last_raw = self.index.last_raw_offset()
                if last_raw is not None:
                    self._end_time = self._time_at(last_raw)

        if self._end_time is None:
            return self.start_time
        return self._end_time

    def _read(self, nmea_only: bool = False) -> Telegram:
        telegram = read_telegram(self.file, self.byte_order, nmea_only)
        if telegram.file_offset == 0:
            self._start_time = telegram.timestamp
            if isinstance(telegram, ConfigTelegram):
                self.config = telegram
        return telegram

    def _time_at(self, offset: int) -> datetime:
        reopened = self.file is None
        if reopened:
            self.open()
        position = self.file.tell()
        try:
            return self.read_at(offset).timestamp
        finally:
            if reopened:
                self.close()
            else:
                self.file.seek(position)

    def _seal_index(self):
        if self._index_builder is not None:
            self.index = self._index_builder.seal()
            self._index_builder = None
            self.logger.debug(f"Indexed {self.path}: {self.index}")

    def __enter__(self):
        """Context manager entry."""
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def __repr__(self) -> str:
        return f"TelegramFile({self.path!r})"
