import os
import struct
import threading

import numpy as np

from es60_adjust.corrector import (ChainCorrector, CorrectionJob, ProcessOutcome, ProgressListener,
                                   output_path_for, process)
from es60_adjust.telegram_file import TelegramFile
from es60_adjust.telegram_structures import LITTLE_ENDIAN, RawTelegram
from es60_adjust.waveform import restore

from conftest import RawFileBuilder, raw_payload


GGA = '$GPGGA,000001,4300.000,S,14700.000,E,1,08,0.9,5.4,M,46.9,M,,'


class RecordingListener(ProgressListener):
    """Keeps every message; optionally cancels after an error or the first update."""

    def __init__(self, cancel_on_error=False, cancel_event=None):
        super().__init__()
        self.updates = []
        self.errors = []
        self.finished = []
        self.cancel_on_error = cancel_on_error
        self.cancel_event = cancel_event

    def update(self, message, percent_of_file, percent_of_total, is_file_complete):
        super().update(message, percent_of_file, percent_of_total, is_file_complete)
        self.updates.append((message, is_file_complete))
        if self.cancel_event is not None:
            self.cancel_event.set()

    def error(self, message):
        super().error(message)
        self.errors.append(message)
        return self.cancel_on_error

    def done(self, message):
        super().done(message)
        self.finished.append(message)

    @property
    def completed_files(self):
        return [message for message, complete in self.updates if complete]


def raw_telegrams(path):
    with TelegramFile(path) as f:
        return [t for t in f if isinstance(t, RawTelegram)]


def powers(path):
    return [list(t.ping.power) for t in raw_telegrams(path)]


def single_channel_file(tmp_path, name, pings, power=(1000, 1000, 1000, 1000), byte_order='>'):
    builder = RawFileBuilder(byte_order)
    for _ in range(pings):
        builder.raw(1, list(power))
    return builder.write(tmp_path / name)


def test_output_path_for():
    assert output_path_for('/data/D20210601-T000000.raw', None, 'c') == '/data/D20210601-T000000c.raw'
    assert output_path_for('/data/x.raw', '/out', 'fixed') == os.path.join('/out', 'xfixed.raw')
    assert output_path_for('x.raw', None, 'c') == 'xc.raw'


def test_corrects_single_file(tmp_path):
    path = single_channel_file(tmp_path, 'D20210601-T000000.raw', 3)
    listener = RecordingListener()

    result = process(1000, [path], listener=listener)

    output = str(tmp_path / 'D20210601-T000000c.raw')
    assert os.path.exists(output)
    assert powers(output) == [[978] * 4] * 3
    assert result.outcome is ProcessOutcome.COMPLETED
    assert result.next_ping == 1003
    assert result.processed == 1
    assert result.files[0].output_path == output
    assert (result.files[0].first_ping, result.files[0].last_ping) == (1000, 1002)
    assert listener.completed_files == ['D20210601-T000000.raw pings: 1000-1002 to D20210601-T000000c.raw']
    assert listener.finished == ['Processed 1 files']

    # the input is untouched
    assert powers(path) == [[1000] * 4] * 3


def test_interleaved_channels_share_a_ping(tmp_path):
    builder = RawFileBuilder(channels=2)
    for channel in (1, 2, 1, 2):
        builder.raw(channel, [100, 200])
    path = builder.write(tmp_path / 'a.raw')
    listener = RecordingListener()

    result = process(15, [path], listener=listener)

    assert listener.completed_files == ['a.raw pings: 15-16 to ac.raw']
    assert result.next_ping == 17
    assert powers(str(tmp_path / 'ac.raw')) == [[100, 200], [100, 200], [99, 199], [99, 199]]


def test_repeated_channel_starts_a_ping(tmp_path):
    builder = RawFileBuilder(channels=2)
    for channel in (1, 1, 2, 2):
        builder.raw(channel, [100, 200])
    path = builder.write(tmp_path / 'a.raw')
    listener = RecordingListener()

    result = process(15, [path], listener=listener)

    assert listener.completed_files == ['a.raw pings: 15-17 to ac.raw']
    assert result.next_ping == 18
    assert powers(str(tmp_path / 'ac.raw')) == [[100, 200], [99, 199], [99, 199], [99, 199]]


def test_chain_carries_ping_count(tmp_path):
    first = single_channel_file(tmp_path, 'a.raw', 3)
    second = single_channel_file(tmp_path, 'b.raw', 3)
    listener = RecordingListener()

    result = process(100, [first, second], listener=listener)

    assert listener.completed_files == ['a.raw pings: 100-102 to ac.raw', 'b.raw pings: 103-105 to bc.raw']
    assert result.next_ping == 106
    assert result.processed == 2

    # wave(100) .. wave(105) are all 6
    assert powers(str(tmp_path / 'bc.raw')) == [[994] * 4] * 3


def test_output_directory(tmp_path):
    path = single_channel_file(tmp_path, 'a.raw', 1)
    outdir = tmp_path / 'out'
    outdir.mkdir()

    result = process(1000, [path], output_directory=str(outdir), filename_suffix='_fixed')

    assert result.files[0].output_path == str(outdir / 'a_fixed.raw')
    assert powers(str(outdir / 'a_fixed.raw')) == [[978] * 4]


def test_flat_part_of_wave_copies_file_unchanged(tmp_path):
    builder = RawFileBuilder(channels=2).nmea(GGA)
    for channel in (1, 2, 1, 2, 1, 2):
        builder.raw(channel, [5, -5], angles=([1, 2], [3, 4]))
    builder.telegram(b'TAG0', b'annotation\x00')
    path = builder.write(tmp_path / 'a.raw')

    process(0, [path])

    with open(path, 'rb') as a, open(tmp_path / 'ac.raw', 'rb') as b:
        assert a.read() == b.read()


def test_non_raw_telegrams_are_copied(tmp_path):
    builder = RawFileBuilder().nmea(GGA).raw(1, [10]).telegram(b'TAG0', b'note\x00').raw(1, [10])
    path = builder.write(tmp_path / 'a.raw')

    process(1000, [path])

    with TelegramFile(path) as f:
        before = list(f)
    with TelegramFile(str(tmp_path / 'ac.raw')) as f:
        after = list(f)

    assert len(before) == len(after)
    for a, b in zip(before, after):
        assert a.header == b.header
        assert a.file_offset == b.file_offset
        if not isinstance(a, RawTelegram):
            assert a.payload == b.payload
    assert [list(t.ping.power) for t in after if isinstance(t, RawTelegram)] == [[-12], [-12]]


def test_little_endian_file(tmp_path):
    path = single_channel_file(tmp_path, 'a.raw', 2, byte_order=LITTLE_ENDIAN)

    process(1000, [path])

    with TelegramFile(str(tmp_path / 'ac.raw')) as f:
        assert f.byte_order == LITTLE_ENDIAN
        raws = [t for t in f if isinstance(t, RawTelegram)]
    assert [list(t.ping.power) for t in raws] == [[978] * 4] * 2


def test_undecodable_raw_telegram_is_copied(tmp_path, caplog):
    short = raw_payload(1, [1, 2, 3])[:-2]
    path = RawFileBuilder().raw(1, [10]).telegram(b'RAW0', short, step_ms=1000).write(tmp_path / 'a.raw')

    result = process(1000, [path])

    assert result.processed == 1
    telegrams = raw_telegrams(str(tmp_path / 'ac.raw'))
    assert list(telegrams[0].ping.power) == [-12]
    assert bytes(telegrams[1].payload) == short
    assert 'left uncorrected' in caplog.text


def test_raw_telegram_without_header_is_copied(tmp_path, caplog):
    path = RawFileBuilder().raw(1, [10]).telegram(b'RAW0', bytes(40)).raw(1, [10]).write(tmp_path / 'a.raw')
    listener = RecordingListener()

    result = process(1000, [path], listener=listener)

    assert result.processed == 1
    assert result.next_ping == 1002
    assert listener.completed_files == ['a.raw pings: 1000-1001 to ac.raw']
    telegrams = raw_telegrams(str(tmp_path / 'ac.raw'))
    assert bytes(telegrams[1].payload) == bytes(40)
    assert [list(t.ping.power) for t in (telegrams[0], telegrams[2])] == [[-12], [-12]]
    assert 'copied without a ping' in caplog.text


def test_output_overwriting_input_fails_file(tmp_path):
    first = single_channel_file(tmp_path, 'a.raw', 2)
    second = single_channel_file(tmp_path, 'b.raw', 2)
    listener = RecordingListener()

    result = process(100, [first, second], filename_suffix='', listener=listener)

    assert result.outcome is ProcessOutcome.COMPLETED
    assert len(result.failed) == 2
    assert result.processed == 0
    assert result.next_ping == 100
    assert len(listener.errors) == 2
    assert 'would overwrite its input' in listener.errors[0]
    assert all(f.output_path is None for f in result.failed)
    assert powers(first) == [[1000] * 4] * 2


def test_framing_error_continues_chain(tmp_path):
    builder = RawFileBuilder()
    for _ in range(3):
        builder.raw(1, [1000])
    builder.data[-4:] = struct.pack('>i', 1)
    first = builder.write(tmp_path / 'a.raw')
    second = single_channel_file(tmp_path, 'b.raw', 3)
    listener = RecordingListener()

    result = process(100, [first, second], listener=listener)

    assert result.outcome is ProcessOutcome.COMPLETED
    assert [f.input_path for f in result.failed] == [first]
    assert len(listener.errors) == 1
    # reading stopped at the third ping of the first file
    assert listener.completed_files == ['b.raw pings: 101-103 to bc.raw']
    assert result.next_ping == 104
    assert result.failed[0].output_path == str(tmp_path / 'ac.raw')
    assert os.path.exists(result.failed[0].output_path)


def test_missing_file(tmp_path):
    second = single_channel_file(tmp_path, 'b.raw', 1)
    listener = RecordingListener()

    result = process(100, [str(tmp_path / 'missing.raw'), second], listener=listener)

    assert len(result.failed) == 1
    assert result.failed[0].output_path is None
    assert result.processed == 1
    assert listener.completed_files == ['b.raw pings: 100-100 to bc.raw']


def test_error_listener_can_cancel_chain(tmp_path):
    second = single_channel_file(tmp_path, 'b.raw', 1)
    listener = RecordingListener(cancel_on_error=True)

    result = process(100, [str(tmp_path / 'missing.raw'), second], listener=listener)

    assert result.outcome is ProcessOutcome.INTERRUPTED
    assert len(result.files) == 1
    assert not os.path.exists(tmp_path / 'bc.raw')
    assert listener.finished == ['Interrupted after 0 files']


def test_cancel_before_start(tmp_path):
    path = single_channel_file(tmp_path, 'a.raw', 2)
    cancel = threading.Event()
    cancel.set()
    listener = RecordingListener()

    result = process(100, [path], listener=listener, cancel_event=cancel)

    assert result.outcome is ProcessOutcome.INTERRUPTED
    assert result.files == []
    assert result.next_ping == 100
    assert not os.path.exists(tmp_path / 'ac.raw')
    assert listener.finished == ['Interrupted after 0 files']


def test_cancel_mid_file_keeps_partial_output(tmp_path):
    path = single_channel_file(tmp_path, 'a.raw', 10)
    cancel = threading.Event()
    listener = RecordingListener(cancel_event=cancel)

    corrector = ChainCorrector(1000, listener=listener, cancel_event=cancel, progress_interval=1)
    result = corrector.run([path])

    assert result.outcome is ProcessOutcome.INTERRUPTED
    assert result.files[0].interrupted
    assert not result.files[0].succeeded
    assert result.files[0].last_ping == 1001
    assert listener.updates == [('a.raw ping 1001', False)]

    # the partial output holds whole telegrams up to the cancel point
    output = str(tmp_path / 'ac.raw')
    with TelegramFile(output) as f:
        telegrams = list(f)
    assert len(telegrams) == 3
    assert [list(t.ping.power) for t in telegrams[1:]] == [[978] * 4] * 2


def test_progress_interval(tmp_path):
    path = single_channel_file(tmp_path, 'a.raw', 12)
    listener = RecordingListener()

    process(0, [path], listener=listener, progress_interval=5)

    assert [m for m, complete in listener.updates if not complete] == ['a.raw ping 5', 'a.raw ping 10']


def test_correction_job(tmp_path):
    path = single_channel_file(tmp_path, 'a.raw', 2)

    job = CorrectionJob(1000, [path])
    job.start()
    job.join(10)

    assert not job.is_alive()
    assert job.exception is None
    assert job.result.outcome is ProcessOutcome.COMPLETED
    assert job.result.next_ping == 1002
    assert powers(str(tmp_path / 'ac.raw')) == [[978] * 4] * 2


def test_corrected_then_restored_matches_input(tmp_path):
    path = single_channel_file(tmp_path, 'a.raw', 5, power=(-32768, 0, 32767, 5))

    process(2000, [path])

    restored = []
    for ping, telegram in enumerate(raw_telegrams(str(tmp_path / 'ac.raw')), start=2000):
        restore(telegram, ping)
        restored.append(list(telegram.ping.power))
    assert restored == powers(path)
    assert np.all(np.array(powers(str(tmp_path / 'ac.raw'))) != np.array(restored))

