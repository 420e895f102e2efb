#!/usr/bin/env python3
"""Print the telegram layout of an ES60 .raw file"""

import sys
import argparse
from collections import Counter

from es60_adjust.exceptions import DecodeError, FramingError
from es60_adjust.telegram_file import TelegramFile, is_es60_file
from es60_adjust.telegram_structures import BIG_ENDIAN, RawTelegram


parser = argparse.ArgumentParser(description='Inspect an ES60 .raw file')
parser.add_argument('file', help='.raw file')
parser.add_argument('--pings', type=int, default=3, help='RAW telegrams to decode in full')
args = parser.parse_args()

if not is_es60_file(args.file):
    print(f"✗ {args.file} does not start with a CON0 telegram")
    sys.exit(1)

types = Counter()
channels = Counter()
decoded = 0

try:
    with TelegramFile(args.file, index=True) as source:
        print(f"Byte order: {'big' if source.byte_order == BIG_ENDIAN else 'little'}-endian")

        for telegram in source:
            types[telegram.type.name] += 1
            if not isinstance(telegram, RawTelegram):
                continue

            channels[telegram.channel] += 1
            if decoded < args.pings:
                decoded += 1
                try:
                    ping = telegram.ping
                    print(f"  RAW0 channel {ping.channel} at {telegram.timestamp.isoformat()}: "
                          f"{ping.sample_count} samples, angles {ping.has_angles}, "
                          f"{ping.frequency:.0f} Hz, first power {ping.power_db()[:5].round(2)}")
                except DecodeError as e:
                    print(f"  ✗ RAW0 at offset {telegram.file_offset}: {e}")

        config = source.config.configuration
        print(f"Survey: {config.survey_name}  Transect: {config.transect_name}  Sounder: {config.sounder_name}")
        for channel, transducer in enumerate(config.transducers, start=1):
            print(f"  Channel {channel}: {transducer.channel_id} {transducer.frequency:.0f} Hz, "
                  f"{source.index.ping_count(channel)} pings indexed")

        print(f"Start: {source.start_time.isoformat()}")
        print(f"End:   {source.end_time.isoformat()}")

except (OSError, FramingError, DecodeError) as e:
    print(f"✗ Failed to read {args.file}: {e}")
    sys.exit(1)

print(f"Telegrams: {dict(types)}")
print(f"RAW0 per channel: {dict(channels)}")
