import time
import threading

import pytest
import serial

from serial_stream import (DeviceUnavailable, SerialDeviceError, open_serial_stream,
                           poll_interval_for)
from .conftest import wait_for


def test_poll_interval_is_one_byte_time():
    assert poll_interval_for(9600) == pytest.approx(833_328e-9)
    assert poll_interval_for(115200) == pytest.approx(69_440e-9)
    assert poll_interval_for(1) == pytest.approx(8.0)


def test_poll_interval_floor():
    assert poll_interval_for(2_000_000_000) == pytest.approx(100e-9)
    with pytest.raises(ValueError):
        poll_interval_for(0)


def test_open_failure_raises_device_unavailable(logger):
    def opener(name, baud):
        raise serial.SerialException("could not open port")
    with pytest.raises(DeviceUnavailable) as exc:
        open_serial_stream("/dev/ttyNOPE", 9600, logger=logger, opener=opener)
    assert "/dev/ttyNOPE@9600" in str(exc.value)


def test_negative_baud_rate_is_taken_as_absolute(device):
    stream = open_serial_stream("COM1", -9600, opener=lambda name, baud: device)
    try:
        assert stream.baud_rate == 9600
        assert stream.input.poll_interval == pytest.approx(poll_interval_for(9600))
    finally:
        stream.close()


def test_burst_is_cached_and_drained_in_order(device, device_stream):
    device.feed(bytes(range(10)))
    assert device_stream.input.read(3) == bytes([0, 1, 2])
    assert device_stream.input.in_waiting == 7
    assert device_stream.input.read(3) == bytes([3, 4, 5])
    assert device_stream.input.read(100) == bytes([6, 7, 8, 9])
    assert device.read_calls == 1


def test_single_byte_read_and_readinto(device, device_stream):
    device.feed(b"\x00\x0a\xff")
    assert device_stream.input.read() == b"\x00"
    buf = bytearray(8)
    assert device_stream.input.readinto(buf) == 2
    assert buf[:2] == b"\x0a\xff"


def test_read_blocks_until_data_arrives(device, device_stream):
    result = []
    reader = threading.Thread(target=lambda: result.append(device_stream.input.read(16)))
    reader.start()
    time.sleep(0.05)
    assert reader.is_alive()
    device.feed(b"late")
    reader.join(2.0)
    assert result == [b"late"]


def test_cancel_wakes_reader_inside_poll_sleep(device):
    stream = open_serial_stream("COM2", 9600, poll_interval=5.0, opener=lambda name, baud: device)
    cancel = threading.Event()
    result = []
    try:
        reader = threading.Thread(target=lambda: result.append(stream.input.read(16, cancel=cancel)))
        reader.start()
        time.sleep(0.1)
        started = time.monotonic()
        cancel.set()
        reader.join(2.0)
        assert not reader.is_alive()
        assert time.monotonic() - started < 1.0
        assert result == [b""]
    finally:
        stream.close()


def test_cancel_latency_is_bounded_by_poll_interval(device):
    stream = open_serial_stream("COM2", 9600, poll_interval=0.2, opener=lambda name, baud: device)
    cancel = threading.Event()
    try:
        reader = threading.Thread(target=stream.input.read, args=(16, cancel))
        reader.start()
        time.sleep(0.05)
        cancel.set()
        reader.join(0.4)
        assert not reader.is_alive()
    finally:
        stream.close()


def test_close_ends_blocked_reader(device):
    stream = open_serial_stream("COM3", 9600, poll_interval=5.0, opener=lambda name, baud: device)
    result = []
    reader = threading.Thread(target=lambda: result.append(stream.input.read(16)))
    reader.start()
    time.sleep(0.05)
    stream.close()
    reader.join(2.0)
    assert result == [b""]
    assert device.close_calls == 1


def test_read_error_marks_device_failed(device, device_stream, logger):
    device.fail_read = True
    assert device_stream.input.read(4) == b""
    assert device_stream.failed
    assert device_stream.input.in_waiting == 0
    assert any("Device error" in e for e in logger.errors)
    with pytest.raises(OSError):
        device_stream.output.write(b"x")


def test_closed_input_reports_end_of_stream_even_with_cached_bytes(device, device_stream):
    device.feed(b"abcdef")
    assert device_stream.input.read(2) == b"ab"
    device_stream.input.close()
    assert device_stream.input.read(2) == b""
    assert device_stream.input.in_waiting == 0


def test_write_and_write_byte(device, device_stream):
    assert device_stream.output.write(b"hello") == 5
    device_stream.output.write_byte(0x1FF)
    device_stream.output.flush()
    assert bytes(device.written) == b"hello\xff"


def test_write_error_is_os_error_and_permanent(device, device_stream):
    device.fail_write = True
    with pytest.raises(OSError):
        device_stream.output.write(b"x")
    device.fail_write = False
    assert device_stream.failed
    with pytest.raises(OSError):
        device_stream.output.write(b"y")


def test_in_waiting_probes_device(device, device_stream):
    assert device_stream.input.in_waiting == 0
    device.feed(b"12345")
    assert device_stream.input.in_waiting == 5
    assert device.read_calls == 0


def test_close_is_idempotent_and_swallows_device_errors(device, logger):
    device.fail_close = True
    stream = open_serial_stream("COM4", 9600, logger=logger, opener=lambda name, baud: device)
    stream.close()
    stream.close()
    assert device.close_calls == 1
    assert stream.failed
    assert "COM4@9600: Closed" in logger.lines


def test_commands_after_close_fail_fast(device):
    stream = open_serial_stream("COM5", 9600, opener=lambda name, baud: device)
    stream.close()
    assert wait_for(lambda: not stream._worker.is_alive())
    with pytest.raises(SerialDeviceError):
        stream._worker.probe()


def test_concurrent_readers_do_not_lose_bytes(device, device_stream):
    payload = bytes(range(256)) * 4
    device.feed(payload)
    got = []
    lock = threading.Lock()

    def reader():
        while True:
            with lock:
                if sum(len(g) for g in got) >= len(payload): return
            chunk = device_stream.input.read(7, cancel=done)
            if not chunk: return
            with lock: got.append(chunk)

    done = threading.Event()
    readers = [threading.Thread(target=reader) for _ in range(2)]
    for r in readers: r.start()
    assert wait_for(lambda: sum(len(g) for g in got) >= len(payload))
    done.set()
    for r in readers: r.join(2.0)
    assert sorted(b"".join(got)) == sorted(payload)


def test_loop_url_round_trip():
    stream = open_serial_stream("loop://", 115200)
    try:
        stream.output.write(b"hello serial")
        data = b""
        deadline = time.monotonic() + 2.0
        while len(data) < 12 and time.monotonic() < deadline:
            data += stream.input.read(64)
        assert data == b"hello serial"
    finally:
        stream.close()



def test_zero_baud_rate_is_device_unavailable():
    opened = []
    with pytest.raises(DeviceUnavailable) as exc:
        open_serial_stream("COM1", 0, opener=lambda name, baud: opened.append(name))
    assert "COM1@0" in str(exc.value)
    assert opened == []


def test_in_waiting_stays_consistent_during_reads(device, device_stream):
    bursts = [bytes(64) if i % 2 else b"\x01" for i in range(60)]
    total = sum(len(b) for b in bursts)
    received = []

    def feeder():
        for burst in bursts:
            device.feed(burst)
            time.sleep(0.002)

    def reader():
        while sum(received) < total:
            received.append(len(device_stream.input.read(7)))

    threads = [threading.Thread(target=feeder), threading.Thread(target=reader)]
    for t in threads: t.start()
    samples = []
    while any(t.is_alive() for t in threads):
        samples.append(device_stream.input.in_waiting)
    for t in threads: t.join(5.0)
    assert sum(received) == total
    assert all(0 <= n <= total for n in samples)
