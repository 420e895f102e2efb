#!/usr/bin/env python3
"""Errors raised while reading, correcting and analysing ES60 files."""


class ES60Error(Exception):
    """Base class for all es60_adjust errors."""


class FramingError(ES60Error):
    """Telegram length prefix and suffix disagree, or the length is impossible."""


class EndOfStream(ES60Error, EOFError):
    """Input ran out at, or inside, a telegram."""


class DecodeError(ES60Error, ValueError):
    """Payload length is inconsistent with the fields it declares."""


class ConfigurationError(ES60Error):
    """Bad parameters, such as an output file that would overwrite its input."""
