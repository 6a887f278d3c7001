# ==============================================================================
# Serial-to-TCP Proxy (com2tcp) - Copy Loops
# Version: 0.1.0
# Date: 18.10.2026
# Author: Igor Brzezek
# ==============================================================================

import socket
import threading

DEFAULT_CHUNK_SIZE = 1024


class SocketStream:
    """Client socket with the read/write/flush calls the copy loops expect."""

    def __init__(self, sock):
        self.sock = sock
        self._closed = False

    def read(self, size=DEFAULT_CHUNK_SIZE, cancel=None):
        # recv() is woken by close(), the cancel event is not needed here
        return self.sock.recv(size)

    def write(self, data):
        self.sock.sendall(data)
        return len(data)

    def flush(self):
        pass

    def close(self):
        if self._closed: return
        self._closed = True
        try: self.sock.shutdown(socket.SHUT_RDWR)
        except OSError: pass
        self.sock.close()


class CopyLoop(threading.Thread):
    """Moves bytes from source to target until stopped or the source ends.

    With a label every forwarded chunk is also dumped through the logger as
    "<label> <hex bytes>". Read/write errors end the loop quietly.
    """

    def __init__(self, source, target, label=None, logger=None, chunk_size=DEFAULT_CHUNK_SIZE, name=None):
        super().__init__(name=name, daemon=True)
        self.source = source
        self.target = target
        self.label = label
        self.logger = logger
        self.chunk_size = chunk_size
        self._stop_event = threading.Event()

    @property
    def dump_data(self):
        return self.label is not None and self.logger is not None

    @property
    def stop_requested(self):
        return self._stop_event.is_set()

    def run(self):
        while not self._stop_event.is_set():
            try:
                data = self.source.read(self.chunk_size, cancel=self._stop_event)
                if not data:
                    break
                self.target.write(data)
                self.target.flush()
            except OSError:
                break
            if self.dump_data:
                self.logger.dump(self.label, data)

    def stop(self, timeout=None):
        self._stop_event.set()
        if timeout is not None and self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)
