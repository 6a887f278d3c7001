# ==============================================================================
# Serial-to-TCP Proxy (com2tcp) - Serial Port Streams
# Version: 0.1.0
# Date: 18.10.2026
# Author: Igor Brzezek
# ==============================================================================
#
# pyserial opened with timeout=0 only offers "give me what is buffered" reads
# and an in_waiting probe. The classes below turn that into a blocking duplex
# stream: a reader that finds nothing sleeps one byte-time and probes again.
# All calls into the pyserial object go through one worker thread per device.

import queue
import threading
from concurrent.futures import Future

import serial  # pip install pyserial

from com2tcp_log import Colors

MIN_POLL_NANOS = 100

PROBE = "probe"
READ  = "read"
WRITE = "write"
CLOSE = "close"


class SerialDeviceError(IOError):
    """The serial device failed or is closed; the device instance is unusable."""


class DeviceUnavailable(IOError):
    """Opening or configuring the serial device failed."""


def poll_interval_for(baud_rate):
    """Seconds needed to transmit one byte (8 bits) at baud_rate, at least 100 ns."""
    if baud_rate < 1:
        raise ValueError(f"Invalid baud rate: {baud_rate}")
    nanos = max((1_000_000_000 // baud_rate) * 8, MIN_POLL_NANOS)
    return nanos / 1_000_000_000


def open_device(port_name, baud_rate):
    """Opens port_name (device path or pyserial URL such as loop://) as 8N1, non-blocking."""
    return serial.serial_for_url(port_name, baudrate=baud_rate,
                                 bytesize=serial.EIGHTBITS,
                                 parity=serial.PARITY_NONE,
                                 stopbits=serial.STOPBITS_ONE,
                                 timeout=0)


class SerialDeviceWorker(threading.Thread):
    """Owns a pyserial object and executes probe/read/write/close commands for it.

    Commands arrive on a queue and are answered through futures, so callers on
    other threads never touch the device directly. Any device exception sets
    ``close_requested`` for good.
    """

    def __init__(self, device, name, logger=None):
        super().__init__(name=f"serial-{name}", daemon=True)
        self.device = device
        self.dev_name = name
        self.logger = logger
        self.close_requested = threading.Event()
        self.closed = False
        self._commands = queue.Queue()
        self._submit_lock = threading.Lock()
        self._stopped = False

    def submit(self, op, payload=None):
        future = Future()
        with self._submit_lock:
            if self._stopped:
                raise SerialDeviceError(f"{self.dev_name}: Device is closed.")
            self._commands.put((op, payload, future))
        return future.result()

    def probe(self):
        return self.submit(PROBE)

    def read_available(self):
        return self.submit(READ)

    def write(self, data):
        self.submit(WRITE, data)

    def close(self):
        self.close_requested.set()
        try: self.submit(CLOSE)
        except SerialDeviceError: pass

    def _execute(self, op, payload):
        if self.close_requested.is_set():
            raise SerialDeviceError(f"{self.dev_name}: Device is closing.")
        if op == PROBE:
            return self.device.in_waiting
        if op == READ:
            waiting = self.device.in_waiting
            return self.device.read(waiting) if waiting > 0 else b""
        if op == WRITE:
            self.device.write(payload)
            return None
        raise ValueError(f"Unknown serial command: {op}")

    def _close_device(self):
        if self.closed: return
        self.closed = True
        try: self.device.close()
        except Exception: pass
        if self.logger: self.logger.log(f"{self.dev_name}: Closed", Colors.YELLOW)

    def run(self):
        while True:
            op, payload, future = self._commands.get()
            if op == CLOSE:
                self._close_device()
                future.set_result(None)
                break
            try:
                future.set_result(self._execute(op, payload))
            except SerialDeviceError as e:
                future.set_exception(e)
            except Exception as e:
                if not self.close_requested.is_set() and self.logger:
                    self.logger.error(f"{self.dev_name}: Device error: {e}")
                self.close_requested.set()
                future.set_exception(SerialDeviceError(f"{self.dev_name}: {e}"))

        with self._submit_lock:
            self._stopped = True
        while True:
            try: _, _, future = self._commands.get_nowait()
            except queue.Empty: break
            future.set_exception(SerialDeviceError(f"{self.dev_name}: Device is closed."))


class SerialInput:
    """Blocking read side of a serial device.

    ``read`` returns b"" only at end of stream: the device was closed or failed,
    or the caller's cancel event was set.
    """

    def __init__(self, worker, poll_interval):
        self._worker = worker
        self.poll_interval = poll_interval
        self._pending = None  # (burst, cursor) or None
        self._read_lock = threading.Lock()

    def _wait_for_data(self, cancel):
        if self._pending is not None: return
        sleeper = cancel if cancel is not None else self._worker.close_requested
        while not self._worker.close_requested.is_set():
            if cancel is not None and cancel.is_set(): return
            try: data = self._worker.read_available()
            except SerialDeviceError: return
            if data:
                self._pending = (bytes(data), 0)
                return
            sleeper.wait(self.poll_interval)

    def read(self, size=1, cancel=None):
        if size <= 0: return b""
        with self._read_lock:
            self._wait_for_data(cancel)
            if self._worker.close_requested.is_set() or self._pending is None:
                return b""
            buf, cursor = self._pending
            end = min(cursor + size, len(buf))
            self._pending = (buf, end) if end < len(buf) else None
            return buf[cursor:end]

    def readinto(self, buffer, cancel=None):
        data = self.read(len(buffer), cancel)
        buffer[:len(data)] = data
        return len(data)

    @property
    def in_waiting(self):
        if self._worker.close_requested.is_set(): return 0
        pending = self._pending
        if pending is not None:
            buf, cursor = pending
            return len(buf) - cursor
        try: return max(self._worker.probe(), 0)
        except SerialDeviceError: return 0

    def close(self):
        self._worker.close_requested.set()


class SerialOutput:
    def __init__(self, worker):
        self._worker = worker

    def write(self, data):
        data = bytes(data)
        if not data: return 0
        try:
            self._worker.write(data)
        except SerialDeviceError as e:
            raise SerialDeviceError(f"Failed to write to a serial port: {e}") from e
        return len(data)

    def write_byte(self, value):
        self.write(bytes((value & 0xFF,)))

    def flush(self):
        pass

    def close(self):
        self._worker.close_requested.set()


class SerialDuplexStream:
    """Open serial device seen as a read side (``input``) and a write side (``output``).

    A stream is single use: once closed or failed it is never reopened.
    """

    def __init__(self, worker, port_name, baud_rate, poll_interval):
        self._worker = worker
        self.port_name = port_name
        self.baud_rate = baud_rate
        self.input = SerialInput(worker, poll_interval)
        self.output = SerialOutput(worker)

    @property
    def failed(self):
        return self._worker.close_requested.is_set()

    def close(self):
        self._worker.close()


def open_serial_stream(port_name, baud_rate, poll_interval=None, logger=None, opener=open_device):
    baud_rate = abs(baud_rate)
    try:
        if poll_interval is None:
            poll_interval = poll_interval_for(baud_rate)
        device = opener(port_name, baud_rate)
    except Exception as e:
        raise DeviceUnavailable(f"Unable to open and initialize serial port ({port_name}@{baud_rate}): {e}") from e
    worker = SerialDeviceWorker(device, f"{port_name}@{baud_rate}", logger)
    worker.start()
    return SerialDuplexStream(worker, port_name, baud_rate, poll_interval)
