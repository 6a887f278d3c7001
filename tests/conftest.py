import ssl
import time
import socket
import argparse
import threading

import pytest
import serial

import com2tcp
from serial_stream import open_serial_stream


class RecordingLogger:
    """Stands in for ProxyLogger and keeps everything it is given."""

    def __init__(self):
        self.lines = []
        self.errors = []
        self.dumps = []
        self._lock = threading.Lock()

    def log(self, msg, color=None, is_debug=False):
        with self._lock: self.lines.append(msg)

    def error(self, msg):
        with self._lock:
            self.errors.append(msg)
            self.lines.append(msg)

    def dump(self, label, data):
        with self._lock: self.dumps.append((label, bytes(data)))


class FakeDevice:
    """Scripted pyserial object: in_waiting/read/write/close with injectable failures."""

    def __init__(self):
        self._lock = threading.Lock()
        self.incoming = bytearray()
        self.written = bytearray()
        self.read_calls = 0
        self.close_calls = 0
        self.fail_read = False
        self.fail_write = False
        self.fail_close = False
        self.is_open = True

    def feed(self, data):
        with self._lock: self.incoming += data

    @property
    def in_waiting(self):
        if self.fail_read: raise serial.SerialException("device unplugged")
        with self._lock: return len(self.incoming)

    def read(self, size=1):
        with self._lock:
            self.read_calls += 1
            data = bytes(self.incoming[:size])
            del self.incoming[:size]
            return data

    def write(self, data):
        if self.fail_write: raise serial.SerialException("write failed")
        with self._lock: self.written += data
        return len(data)

    def close(self):
        self.close_calls += 1
        self.is_open = False
        if self.fail_close: raise serial.SerialException("close failed")


class FakeStreamFactory:
    """open_serial_stream over FakeDevices; ``fail_next`` makes the next opens fail."""

    def __init__(self, poll_interval=0.001):
        self.poll_interval = poll_interval
        self.devices = []
        self.streams = []
        self.fail_next = 0

    def __call__(self, port_name, baud_rate, poll_interval=None, logger=None):
        def opener(name, baud):
            if self.fail_next > 0:
                self.fail_next -= 1
                raise serial.SerialException(f"could not open port {name}")
            device = FakeDevice()
            self.devices.append(device)
            return device
        stream = open_serial_stream(port_name, baud_rate, poll_interval=self.poll_interval,
                                    logger=logger, opener=opener)
        self.streams.append(stream)
        return stream


def wait_for(predicate, timeout=3.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate(): return True
        time.sleep(interval)
    return predicate()


def recv_exactly(sock, size, timeout=3.0):
    sock.settimeout(timeout)
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk: break
        data += chunk
    return data


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def logger():
    return RecordingLogger()


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def stream_factory():
    factory = FakeStreamFactory()
    yield factory
    for stream in factory.streams: stream.close()


@pytest.fixture
def device_stream(device, logger):
    stream = open_serial_stream("COM7", 9600, poll_interval=0.001, logger=logger, opener=lambda name, baud: device)
    yield stream
    stream.close()


def tls_client_context():
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


@pytest.fixture(scope="session")
def server_ssl_context():
    args = argparse.Namespace(secauto=True, sec=None)
    return com2tcp.build_ssl_context(args, RecordingLogger())
