"""
ES60 triangle wave correction.

Reads Simrad ES60 .raw recordings, removes the triangular error waveform the
sounder adds to its power samples, and estimates the phase of that waveform.
"""

__version__ = '0.1.0'
