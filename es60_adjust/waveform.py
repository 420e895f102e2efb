#!/usr/bin/env python3
"""
ES60 triangle wave error model.

The ES60 adds a triangular wave with a period of 2721 pings to every power
sample it records. The wave rises from 0 to +42 over the first quarter of the
period, falls to -42 at three quarters and rises back to 0, in steps of one
count every 16 pings.
"""

import numpy as np

from .telegram_structures import RawTelegram


PERIOD = 2721
QUARTER = PERIOD // 4              # 680
HALF = PERIOD // 2                 # 1360
THREE_QUARTERS = PERIOD * 3 // 4   # 2040
STEP = 16

# Pings at which the wave changes direction
TURN_UP = QUARTER + 1
TURN_DOWN = THREE_QUARTERS + 1

AMPLITUDE = QUARTER // STEP        # 42


def wave(ping: int) -> int:
    """Triangle wave offset added by the ES60 to the samples of a ping."""
    m = ping % PERIOD
    if m > THREE_QUARTERS:
        m -= PERIOD
    elif m > QUARTER:
        m = HALF - m
    # Integer division rounding towards zero, so the wave is odd about 0
    return int(m / STEP)


def wave_table(pings) -> np.ndarray:
    """Vectorised wave() over an array of ping numbers."""
    m = np.mod(np.asarray(pings, dtype=np.int64), PERIOD)
    m = np.where(m > THREE_QUARTERS, m - PERIOD, np.where(m > QUARTER, HALF - m, m))
    return np.fix(m / STEP).astype(np.int64)


# One full period, indexed by ping % PERIOD
WAVE = wave_table(np.arange(PERIOD))
WAVE.setflags(write=False)


def correct(telegram: RawTelegram, ping: int, sign: int = -1) -> RawTelegram:
    """
    Remove the triangle wave from a RAW telegram in place.

    Args:
        telegram: RAW telegram for the ping
        ping: Ping number in the wave sequence
        sign: -1 removes the wave, +1 adds it back

    Returns:
        The same telegram, for chaining

    Raises:
        DecodeError: if the payload cannot hold its declared samples
    """
    offset = wave(ping)
    if offset != 0:
        telegram.adjust(sign * offset)
    return telegram


def restore(telegram: RawTelegram, ping: int) -> RawTelegram:
    """Add the triangle wave back, undoing correct()."""
    return correct(telegram, ping, sign=1)
