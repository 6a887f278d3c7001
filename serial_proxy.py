# ==============================================================================
# Serial-to-TCP Proxy (com2tcp) - Bindings & Listeners
# Version: 0.1.0
# Date: 18.10.2026
# Author: Igor Brzezek
# ==============================================================================

import ssl
import socket
import threading

from com2tcp_log import Colors, ProxyLogger
from copy_loop import CopyLoop, SocketStream, DEFAULT_CHUNK_SIZE
from serial_stream import DeviceUnavailable, open_serial_stream

IDLE   = "idle"
ACTIVE = "active"

DEFAULT_ADDRESS      = "0.0.0.0"
DEFAULT_STOP_TIMEOUT = 1.0
ACCEPT_TIMEOUT       = 0.5
HANDSHAKE_TIMEOUT    = 5.0


class ConfigurationError(ValueError):
    pass


def _peer_name(conn):
    try: return conn.getpeername()
    except OSError: return "???"


def _format_address(address):
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address)


def _close_quietly(conn):
    try: conn.close()
    except OSError: pass


class Binding:
    """One serial port served on one TCP port, with at most one client at a time.

    The serial device is opened on the first client and kept open between
    clients. A new client always replaces the current one. Bytes already read
    from the serial port for the replaced client are dropped.
    """

    def __init__(self, tcp_port, port_name, baud_rate, dump_data=False, logger=None,
                 chunk_size=DEFAULT_CHUNK_SIZE, poll_interval=None, stop_timeout=DEFAULT_STOP_TIMEOUT,
                 ssl_context=None, handshake_timeout=HANDSHAKE_TIMEOUT,
                 stream_factory=open_serial_stream):
        self.tcp_port = tcp_port
        self.port_name = port_name
        self.baud_rate = baud_rate
        self.dump_data = dump_data
        self.logger = logger if logger is not None else ProxyLogger()
        self.chunk_size = chunk_size
        self.poll_interval = poll_interval
        self.stop_timeout = stop_timeout
        self.ssl_context = ssl_context
        self.handshake_timeout = handshake_timeout
        self.stream_factory = stream_factory

        self.serial_stream = None
        self.active_socket = None
        self.active_address = None
        self.copy_serial2tcp = None
        self.copy_tcp2serial = None
        self.sessions = 0
        self._lock = threading.RLock()

    @property
    def id(self):
        return f"{self.port_name}@{self.baud_rate}"

    @property
    def state(self):
        return ACTIVE if self.active_socket is not None else IDLE

    def open_serial(self):
        self.logger.log(f"{self.id}: Opening ...", Colors.WHITE)
        try:
            self.serial_stream = self.stream_factory(self.port_name, self.baud_rate,
                                                     poll_interval=self.poll_interval, logger=self.logger)
        except DeviceUnavailable as e:
            self.serial_stream = None
            self.logger.error(f"{self.id}: Opening failed ({e})")
            return False
        self.logger.log(f"{self.id}: Open", Colors.GREEN)
        return True

    def stop_client(self):
        with self._lock:
            if self.active_socket is None: return
            self.logger.log(f"{self.id}: Client {_format_address(self.active_address)} disconnected.", Colors.YELLOW)
            loops = (self.copy_serial2tcp, self.copy_tcp2serial)
            for loop in loops: loop.stop()
            try:
                self.active_socket.close()
            except OSError as e:
                self.logger.error(f"{self.id}: Closing of client socket failed: {e}")
            for loop in loops: loop.stop(self.stop_timeout)
            self.active_socket, self.active_address = None, None
            self.copy_serial2tcp, self.copy_tcp2serial = None, None

    def _wrap_tls(self, conn, addr_txt):
        conn.settimeout(self.handshake_timeout)
        try:
            self.logger.log(f"{self.id}: Initiating SSL handshake with {addr_txt}...", Colors.WHITE, is_debug=True)
            conn = self.ssl_context.wrap_socket(conn, server_side=True)
        except (ssl.SSLError, OSError) as e:
            self.logger.error(f"{self.id}: SSL handshake with {addr_txt} failed: {e}")
            _close_quietly(conn)
            return None
        conn.settimeout(None)
        return conn

    def handle_client(self, conn, address=None):
        """Makes conn the active client. Returns False if the client was turned away.

        With TLS the handshake (bounded by handshake_timeout) completes before
        the current client is evicted. A failed handshake leaves the session running.
        """
        if address is None: address = _peer_name(conn)
        addr_txt = _format_address(address)
        if self.ssl_context is not None:
            conn = self._wrap_tls(conn, addr_txt)
            if conn is None: return False

        with self._lock:
            if self.active_socket is not None:
                self.stop_client()

            self.logger.log(f"{self.id}: New client {addr_txt}", Colors.GREEN)

            if self.serial_stream is not None and self.serial_stream.failed:
                self.logger.log(f"{self.id}: Serial port failed earlier, reopening.", Colors.YELLOW)
                self.serial_stream.close()
                self.serial_stream = None

            if self.serial_stream is None and not self.open_serial():
                self.logger.error(f"{self.id}: Client {addr_txt} disconnected due to inactive serial port.")
                _close_quietly(conn)
                return False

            client = SocketStream(conn)
            tcp2serial_label = f"{self.id} <<" if self.dump_data else None
            serial2tcp_label = f"{self.id} >>" if self.dump_data else None
            self.copy_tcp2serial = CopyLoop(client, self.serial_stream.output, tcp2serial_label, self.logger,
                                            self.chunk_size, name=f"{self.id} <<")
            self.copy_serial2tcp = CopyLoop(self.serial_stream.input, client, serial2tcp_label, self.logger,
                                            self.chunk_size, name=f"{self.id} >>")
            self.active_socket, self.active_address = client, address
            self.sessions += 1
            self.copy_tcp2serial.start()
            self.copy_serial2tcp.start()
            return True

    def close(self):
        with self._lock:
            self.stop_client()
            if self.serial_stream is not None:
                self.serial_stream.close()
                self.serial_stream = None


class SerialProxy:
    """Registry of bindings keyed by TCP port, one listening thread per binding."""

    def __init__(self, logger=None, address=DEFAULT_ADDRESS, daemon_threads=True,
                 chunk_size=DEFAULT_CHUNK_SIZE, poll_interval=None, stop_timeout=DEFAULT_STOP_TIMEOUT,
                 ssl_context=None, handshake_timeout=HANDSHAKE_TIMEOUT,
                 stream_factory=open_serial_stream):
        self.logger = logger if logger is not None else ProxyLogger()
        self.address = address
        self.daemon_threads = daemon_threads
        self.chunk_size = chunk_size
        self.poll_interval = poll_interval
        self.stop_timeout = stop_timeout
        self.ssl_context = ssl_context
        self.handshake_timeout = handshake_timeout
        self.stream_factory = stream_factory
        self.port_bindings = {}
        self.listening_ports = {}
        self._listeners = {}
        self._threads = []
        self._shutdown = threading.Event()

    def add_binding(self, tcp_port, port_name, baud_rate, dump_data=False):
        if tcp_port < 1 or tcp_port > 65535:
            raise ConfigurationError(f"Invalid tcp port: {tcp_port}")
        if baud_rate < 1:
            raise ConfigurationError(f"Invalid baud rate: {baud_rate}")
        if tcp_port in self.port_bindings:
            raise ConfigurationError(f"TCP port {tcp_port} is already bound to a serial port.")

        binding = Binding(tcp_port, port_name, baud_rate, dump_data, self.logger,
                          chunk_size=self.chunk_size, poll_interval=self.poll_interval,
                          stop_timeout=self.stop_timeout, ssl_context=self.ssl_context,
                          handshake_timeout=self.handshake_timeout, stream_factory=self.stream_factory)
        self.port_bindings[tcp_port] = binding
        return binding

    @property
    def running(self):
        return any(t.is_alive() for t in self._threads)

    def _listen(self, tcp_port):
        listen_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listen_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listen_sock.bind((self.address, tcp_port))
            listen_sock.listen(5)
            listen_sock.settimeout(ACCEPT_TIMEOUT)
        except OSError:
            listen_sock.close()
            raise
        return listen_sock

    def launch(self):
        for tcp_port, binding in self.port_bindings.items():
            try:
                listen_sock = self._listen(tcp_port)
            except OSError as e:
                self.logger.error(f"Port {tcp_port}: Listening failed: {e}")
                continue
            self._listeners[tcp_port] = listen_sock
            self.listening_ports[tcp_port] = listen_sock.getsockname()[1]
            t = threading.Thread(target=self._accept_loop, args=(tcp_port, listen_sock, binding),
                                 name=f"listen-{tcp_port}", daemon=self.daemon_threads)
            self._threads.append(t)
            t.start()

    def _accept_loop(self, tcp_port, listen_sock, binding):
        self.logger.log(f"Port {tcp_port}: Listening for {binding.id}{' (dump)' if binding.dump_data else ''}", Colors.WHITE)
        try:
            while not self._shutdown.is_set():
                try:
                    conn, addr = listen_sock.accept()
                except socket.timeout:
                    continue
                conn.settimeout(None)
                binding.handle_client(conn, addr)
        except Exception as e:
            if not self._shutdown.is_set():
                self.logger.error(f"Port {tcp_port}: Listener failed: {e}")
        finally:
            _close_quietly(listen_sock)

    def shutdown(self, timeout=2.0):
        self._shutdown.set()
        for t in self._threads:
            if t is not threading.current_thread(): t.join(timeout)
        for binding in self.port_bindings.values():
            binding.close()
