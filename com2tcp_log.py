# ==============================================================================
# Serial-to-TCP Proxy (com2tcp) - Logging
# Version: 0.1.0
# Date: 18.10.2026
# Author: Igor Brzezek
# ==============================================================================

import os
import sys
import glob
import datetime
import threading


class Colors:
    RESET       = "\033[0m"
    RED         = "\033[91m"
    GREEN       = "\033[92m"
    YELLOW      = "\033[93m"
    CYAN        = "\033[96m"
    MAGENTA     = "\033[95m"
    WHITE       = "\033[97m"


class UiColors:
    _UI_COL_TIME_    = Colors.WHITE
    _UI_COL_DEBUG_   = Colors.YELLOW
    _UI_COL_DIR_IN_  = Colors.GREEN
    _UI_COL_DIR_OUT_ = Colors.MAGENTA


def format_dump(data):
    """Hex dump of a byte chunk: two lowercase digits per byte, space separated."""
    return bytes(data).hex(' ')


def _rotate_logs(base_filename, max_files):
    if max_files <= 0: return
    files = sorted(glob.glob(f"{base_filename}*"), key=os.path.getmtime)
    while len(files) >= max_files:
        try: os.remove(files[0]); files.pop(0)
        except OSError: break


def get_log_filename(arg_val, max_files):
    """Resolves FILE[,new] into a log path, picking a fresh name for 'new'."""
    if not arg_val: return None
    parts = arg_val.split(',')
    fname = parts[0]
    if not os.path.splitext(fname)[1]: fname += ".log"
    if len(parts) > 1 and parts[1].lower() == 'new':
        base, ext = os.path.splitext(fname); counter = 1; new_fname = fname
        while os.path.exists(new_fname):
            new_fname = f"{base}_{counter}{ext}"; counter += 1
        fname = new_fname
    if max_files: _rotate_logs(os.path.splitext(fname)[0], max_files)
    return fname


def write_to_file(filename, data, max_size_kb=0, max_files=0):
    if not filename: return
    if max_size_kb > 0 and os.path.exists(filename):
        if os.path.getsize(filename) > (max_size_kb * 1024):
            _rotate_logs(os.path.splitext(filename)[0], max_files)
            base, ext = os.path.splitext(filename)
            timestamp = datetime.datetime.now().strftime('%Y%m%d_%H%M%S')
            os.rename(filename, f"{base}_{timestamp}{ext}")
    with open(filename, "a") as f: f.write(data)


class ProxyLogger:
    """Timestamped console/file log shared by the proxy components.

    Every component receives its logger at construction. Anything with the
    same ``log``/``error``/``dump`` methods can stand in for it (tests use a
    recording sink).
    """

    def __init__(self, color=False, debug=False, batch=False, log_file=None,
                 logmax=10, logsizemax=4096, stream=None):
        self.color = color
        self.debug = debug
        self.batch = batch
        self.log_file = log_file
        self.logmax = logmax
        self.logsizemax = logsizemax
        self.stream = stream if stream is not None else sys.stdout
        self._lock = threading.Lock()

    def log(self, msg, color=Colors.CYAN, is_debug=False):
        if is_debug and not self.debug: return
        ts = datetime.datetime.now().strftime('%H:%M:%S')
        debug_tag = " (DEBUG)" if is_debug else ""
        if self.color:
            r = Colors.RESET
            c_debug = f" {UiColors._UI_COL_DEBUG_}(DEBUG){r}" if is_debug else ""
            line = f"{UiColors._UI_COL_TIME_}{ts}{r}{c_debug} {color}{msg}{r}"
        else:
            line = f"{ts}{debug_tag} {msg}"

        with self._lock:
            if self.log_file:
                try:
                    write_to_file(self.log_file, f"{ts}{debug_tag} {msg}\n",
                                  max_size_kb=self.logsizemax, max_files=self.logmax)
                except OSError as e:
                    # console only from here on
                    sys.stderr.write(f"[ERROR] Log file {self.log_file} disabled: {e}\n")
                    self.log_file = None
            if not self.batch:
                self.stream.write(line + "\n")
                self.stream.flush()

    def error(self, msg):
        self.log(msg, Colors.RED)

    def dump(self, label, data):
        color = UiColors._UI_COL_DIR_OUT_ if label.endswith(">>") else UiColors._UI_COL_DIR_IN_
        self.log(f"{label} {format_dump(data)}", color)
