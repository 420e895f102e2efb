#!/usr/bin/env python3
"""
Random-access index over the telegrams of one ES60 file.

Slot 0 holds the offsets of position-bearing NMEA telegrams, slot c the
offsets of RAW telegrams for channel c (1-based, as numbered in the CON0
transducer table).
"""

import logging
from typing import List, Optional

import numpy as np

from .telegram_structures import NmeaTelegram, RawTelegram, Telegram


class RecordIndex:
    """Sealed offset tables, one numpy array per slot."""

    def __init__(self, slots: List[np.ndarray]):
        self._slots = slots

    @property
    def channel_count(self) -> int:
        return len(self._slots) - 1

    def positions(self, channel: int) -> np.ndarray:
        """Offsets of the RAW telegrams for a channel, or of the fixes for channel 0."""
        return self._slots[channel]

    def fix_positions(self) -> np.ndarray:
        return self._slots[0]

    def ping_count(self, channel: int) -> int:
        return len(self._slots[channel])

    def last_raw_offset(self) -> Optional[int]:
        """Offset of the last RAW telegram in the file, over all channels."""
        ends = [int(slot[-1]) for slot in self._slots[1:] if len(slot) > 0]
        return max(ends) if ends else None

    def __repr__(self) -> str:
        counts = ', '.join(str(len(slot)) for slot in self._slots)
        return f"RecordIndex([{counts}])"


class RecordIndexBuilder:
    """Collects telegram offsets during a sequential read."""

    def __init__(self, channel_count: int):
        """
        Args:
            channel_count: Number of transducers in the file's CON0 telegram
        """
        self._slots: List[List[int]] = [[] for _ in range(channel_count + 1)]
        self._ignored_channels = set()
        self.logger = logging.getLogger('RecordIndexBuilder')

    def add(self, telegram: Telegram):
        if telegram.file_offset is None:
            return

        if isinstance(telegram, RawTelegram):
            channel = telegram.channel
            if 0 < channel < len(self._slots):
                self._slots[channel].append(telegram.file_offset)
            elif channel not in self._ignored_channels:
                self._ignored_channels.add(channel)
                self.logger.debug(f"Ignoring RAW telegrams for unconfigured channel {channel}")

        elif isinstance(telegram, NmeaTelegram) and telegram.has_position:
            self._slots[0].append(telegram.file_offset)

    def seal(self) -> RecordIndex:
        return RecordIndex([np.array(slot, dtype=np.int64) for slot in self._slots])
