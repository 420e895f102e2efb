"""Builders for synthetic ES60 .raw files."""

import struct

import numpy as np
import pytest

from es60_adjust.telegram_structures import BIG_ENDIAN, TICKS_PER_MILLISECOND


# 2021-06-01T00:00:00Z plus a 123.4 microsecond remainder
BASE_TICKS = 132669792000001234

PULSE_LENGTHS = (0.000256, 0.000512, 0.001024, 0.002048, 0.004096)
GAINS = (24.0, 25.0, 26.5, 26.75, 27.0)
SA_CORRECTIONS = (-0.7, -0.69, -0.65, -0.6, -0.55)


def frame(tag: bytes, payload: bytes, ticks: int = BASE_TICKS, byte_order: str = BIG_ENDIAN) -> bytes:
    """One framed telegram."""
    length = struct.pack(byte_order + 'i', 12 + len(payload))
    time = struct.pack(byte_order + 'II', ticks & 0xFFFFFFFF, ticks >> 32)
    return length + tag + time + payload + length


def _name(text: str) -> bytes:
    return text.encode('ascii').ljust(128, b'\x00')


def config_payload(channels: int = 1, byte_order: str = BIG_ENDIAN, survey: str = 'Survey') -> bytes:
    data = bytearray(_name(survey) + _name('Transect 1') + _name('ES60') + bytes(128))
    data += struct.pack(byte_order + 'i', channels)
    for channel in range(1, channels + 1):
        block = bytearray(320)
        block[0:128] = _name(f'GPT  38 kHz 009072033fa{channel} 1-1 ES38B')
        struct.pack_into(byte_order + 'i', block, 128, 1)
        struct.pack_into(byte_order + '15f', block, 132,
                         38000.0 * channel, 26.5, -20.6, 7.1, 7.0, 21.9, 21.8, 0.1, -0.1,
                         0.0, 0.0, 5.0, 0.0, 0.0, 1.0)
        struct.pack_into(byte_order + '5f', block, 192, *PULSE_LENGTHS)
        struct.pack_into(byte_order + '5f', block, 220, *GAINS)
        struct.pack_into(byte_order + '5f', block, 248, *SA_CORRECTIONS)
        data += block
    return bytes(data)


def raw_payload(channel: int, power, byte_order: str = BIG_ENDIAN, angles=None,
                pulse_length: float = 0.001024) -> bytes:
    """RAW0 payload; angles is an (alongship, athwartship) pair of int8 sequences."""
    count = len(power)
    header = struct.pack(byte_order + 'hh12fhhffii', channel, 1 if angles is not None else 0,
                         5.0, 38000.0, 1000.0, pulse_length, 2425.0, 0.000256, 1500.0, 0.0098,
                         0.1, 0.2, -0.3, 10.5, 0, 0, 0.0, 0.0, 0, count)
    data = header + np.asarray(power, dtype=byte_order + 'i2').tobytes()
    if angles is not None:
        along = np.asarray(angles[0], dtype=np.int8).view(np.uint8).astype(np.uint16)
        athwart = np.asarray(angles[1], dtype=np.int8).view(np.uint8).astype(np.uint16)
        data += ((along << 8) | athwart).astype(byte_order + 'u2').tobytes()
    return data


class RawFileBuilder:
    """Assembles a .raw file telegram by telegram, starting with CON0."""

    def __init__(self, byte_order: str = BIG_ENDIAN, channels: int = 1):
        self.byte_order = byte_order
        self.ticks = BASE_TICKS
        self.data = bytearray(frame(b'CON0', config_payload(channels, byte_order), self.ticks, byte_order))

    def telegram(self, tag: bytes, payload: bytes, step_ms: int = 0) -> 'RawFileBuilder':
        self.ticks += step_ms * TICKS_PER_MILLISECOND
        self.data += frame(tag, payload, self.ticks, self.byte_order)
        return self

    def raw(self, channel: int, power, angles=None, step_ms: int = 1000) -> 'RawFileBuilder':
        return self.telegram(b'RAW0', raw_payload(channel, power, self.byte_order, angles), step_ms)

    def nmea(self, sentence: str, step_ms: int = 0) -> 'RawFileBuilder':
        return self.telegram(b'NME0', sentence.encode('ascii') + b'\r\n', step_ms)

    def to_bytes(self) -> bytes:
        return bytes(self.data)

    def write(self, path) -> str:
        with open(path, 'wb') as f:
            f.write(self.data)
        return str(path)


@pytest.fixture
def builder():
    return RawFileBuilder
