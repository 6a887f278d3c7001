# ==============================================================================
# Serial-to-TCP Proxy (com2tcp)
# Version: 0.1.0
# Date: 18.10.2026
# Author: Igor Brzezek
# ==============================================================================

import os
import re
import sys
import ssl
import time
import signal
import shutil
import socket
import argparse
import datetime
import tempfile
import configparser

# --- Dependencies Check ---
try:
    import serial  # noqa: F401  pip install pyserial
except ImportError:
    print("\n[ERROR] Missing 'pyserial' library (Required for serial port communication).")
    print("\nTo install missing dependencies, run:\n  pip install pyserial\n")
    sys.exit(1)

try:
    from cryptography import x509
    from cryptography.x509.oid import NameOID
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa
    HAS_CRYPTO = True
except ImportError:
    HAS_CRYPTO = False

from com2tcp_log import Colors, ProxyLogger, get_log_filename
from copy_loop import DEFAULT_CHUNK_SIZE
from serial_proxy import SerialProxy, ConfigurationError, DEFAULT_ADDRESS

__CODE_NAME__    = "Serial-to-TCP Proxy"
__CODE_AUTHOR__  = "Igor Brzezek"
__CODE_VERSION__ = "0.1.0"
__CODE_DATE__    = "18.10.2026"

__TXT_SUMMARY__ = "---=== Summary ===---"

BINDINGS_SECTION = "BINDINGS"

_INT_RE = re.compile(r"[+-]?\d+")

DEFAULT_CONFIG = {
    'address': DEFAULT_ADDRESS,
    'chunksize': DEFAULT_CHUNK_SIZE,
    'pollinterval': None,
    'secauto': False,
    'sec': None,
    'log': None,
    'logmax': 10,
    'logsizemax': 4096,
    'color': False,
    'mono': False,
    'debug': False,
    'batch': False,
    'cfgfile': None,
    'h': False,
    'help': False,
    'version': False,
}

INT_KEYS = ['chunksize', 'pollinterval', 'logmax', 'logsizemax']


class GlobalState:
    keep_running = True
    start_time = None

state = GlobalState()


def _parse_int(text):
    text = text.strip()
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"Not a decimal integer: {text!r}")
    return int(text)


def parse_binding(text):
    """Parses TCP_PORT:SERIAL_ID@BAUD (plain) or TCP_PORT::SERIAL_ID@BAUD (with dump).

    Returns (tcp_port, serial_id, baud_rate, dump_data); raises ValueError.
    """
    colon_idx = text.find(':')
    if colon_idx < 0:
        raise ValueError(f"Missing ':' in binding {text!r}")
    tcp_port = _parse_int(text[:colon_idx])
    rest = text[colon_idx + 1:]

    dump_data = False
    if rest.startswith(':'):
        dump_data = True
        rest = rest[1:]

    at_idx = rest.rfind('@')
    if at_idx < 0:
        raise ValueError(f"Missing '@' in binding {text!r}")
    serial_id = rest[:at_idx]
    if not serial_id:
        raise ValueError(f"Missing serial port in binding {text!r}")
    baud_rate = _parse_int(rest[at_idx + 1:])
    return tcp_port, serial_id, baud_rate, dump_data


def format_binding(tcp_port, serial_id, baud_rate, dump_data=False):
    return f"{tcp_port}{'::' if dump_data else ':'}{serial_id}@{baud_rate}"


def add_binding(proxy, text):
    tcp_port, serial_id, baud_rate, dump_data = parse_binding(text)
    return proxy.add_binding(tcp_port, serial_id, baud_rate, dump_data)


def generate_self_signed_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, u"com2tcp")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (x509.CertificateBuilder().subject_name(subject).issuer_name(issuer)
            .public_key(key.public_key()).serial_number(x509.random_serial_number())
            .not_valid_before(now).not_valid_after(now + datetime.timedelta(days=365))
            .sign(key, hashes.SHA256()))
    return (cert.public_bytes(serialization.Encoding.PEM),
            key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.TraditionalOpenSSL,
                              serialization.NoEncryption()))


def build_ssl_context(args, logger):
    """Server-side TLS context for --secauto / --sec CERT,KEY, or None for raw TCP."""
    if not (args.secauto or args.sec): return None
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    if args.secauto:
        logger.log("Action: Generating self-signed SSL certificate...", Colors.WHITE, is_debug=True)
        c_bytes, k_bytes = generate_self_signed_cert()
        tmp_dir = tempfile.mkdtemp(prefix="com2tcp_")
        try:
            cert_path, key_path = os.path.join(tmp_dir, "temp.crt"), os.path.join(tmp_dir, "temp.key")
            with open(cert_path, "wb") as f: f.write(c_bytes)
            with open(key_path, "wb") as f: f.write(k_bytes)
            ctx.load_cert_chain(certfile=cert_path, keyfile=key_path)
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)
    else:
        cp, kp = args.sec.split(',')
        ctx.load_cert_chain(certfile=cp.strip(), keyfile=kp.strip())
    return ctx


def read_config_file(path, config, bindings):
    """Applies [DEFAULT] options and collects [BINDINGS] entries from an INI file.

    A binding is either a bare line (8000::/dev/ttyUSB0@9600) or name = binding.
    """
    cp = configparser.ConfigParser(interpolation=None, delimiters=('=',), allow_no_value=True)
    cp.optionxform = str
    with open(path, 'r') as f: file_content = f.read()
    try: cp.read_string(file_content)
    except configparser.MissingSectionHeaderError: cp.read_string('[DEFAULT]\n' + file_content)

    for k, val in cp.defaults().items():
        key = k.lower()
        if key not in config or key in ('cfgfile', 'h', 'help', 'version'): continue
        if val is None: raise ValueError(f"Missing value for '{k}'")
        if '#' in val: val = val.split('#')[0]
        val = val.strip()
        if key in INT_KEYS:
            config[key] = _parse_int(val)
        elif isinstance(DEFAULT_CONFIG[key], bool):
            v_lower = val.lower()
            if v_lower in ['true', '1', 'yes', 'on']: config[key] = True
            elif v_lower in ['false', '0', 'no', 'off']: config[key] = False
            else: raise ValueError(f"Invalid boolean for '{key}': {val}")
        else:
            config[key] = val

    if cp.has_section(BINDINGS_SECTION):
        for k, val in cp.items(BINDINGS_SECTION, raw=True):
            if k in cp.defaults(): continue
            if val is None: val = k
            if '#' in val: val = val.split('#')[0]
            if val.strip(): bindings.append(val.strip())


def build_parser():
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument('bindings', nargs='*')
    parser.add_argument('-a', '--address')
    parser.add_argument('--chunksize', type=int)
    parser.add_argument('--pollinterval', type=int)
    parser.add_argument('--secauto', action='store_true', default=None)
    parser.add_argument('--sec')
    parser.add_argument('--log')
    parser.add_argument('--logmax', type=int)
    parser.add_argument('--logsizemax', type=int)
    parser.add_argument('--color', action='store_true', default=None)
    parser.add_argument('--mono', action='store_true', default=None)
    parser.add_argument('--debug', action='store_true', default=None)
    parser.add_argument('-b', '--batch', action='store_true', default=None)
    parser.add_argument('--cfgfile')
    parser.add_argument('--version', action='store_true', default=False)
    parser.add_argument('-h', action='store_true', default=False)
    parser.add_argument('--help', action='store_true', default=False)
    return parser


def load_hierarchical_config(argv=None):
    """Defaults, then --cfgfile, then the command line. Returns (Namespace, binding strings)."""
    config = DEFAULT_CONFIG.copy()
    cli_args = build_parser().parse_args(argv)
    bindings = []
    if cli_args.cfgfile:
        read_config_file(cli_args.cfgfile, config, bindings)
    for key, value in vars(cli_args).items():
        if key == 'bindings': continue
        if value is not None: config[key] = value
    bindings.extend(cli_args.bindings)
    return argparse.Namespace(**config), bindings


def validate_args(args):
    """Validate option values; prints a one-line [ERROR] and returns False on the first problem."""
    if args.address:
        try:
            socket.inet_aton(args.address)
        except OSError:
            print(f"[ERROR] Invalid IP address: {args.address}")
            return False

    if not isinstance(args.chunksize, int) or args.chunksize < 1:
        print(f"[ERROR] Invalid chunksize: {args.chunksize}. Must be at least 1.")
        return False

    if args.pollinterval is not None and (not isinstance(args.pollinterval, int) or args.pollinterval < 1):
        print(f"[ERROR] Invalid pollinterval: {args.pollinterval}. Must be at least 1 (nanoseconds).")
        return False

    if args.secauto and args.sec:
        print("[ERROR] Cannot use both --secauto and --sec simultaneously. Choose one SSL method.")
        return False

    if args.secauto and not HAS_CRYPTO:
        print("[ERROR] Missing 'cryptography' library (Required for --secauto).")
        print("  pip install cryptography")
        return False

    if args.sec and len(args.sec.split(',')) != 2:
        print(f"[ERROR] Invalid --sec value: {args.sec}. Expected CERT,KEY.")
        return False

    if not isinstance(args.logmax, int) or args.logmax < 1:
        print(f"[ERROR] Invalid logmax: {args.logmax}. Must be at least 1.")
        return False

    if not isinstance(args.logsizemax, int) or args.logsizemax < 1:
        print(f"[ERROR] Invalid logsizemax: {args.logsizemax}. Must be at least 1.")
        return False

    if args.color and args.mono:
        print("[ERROR] Cannot use both --color and --mono. Choose one.")
        return False

    return True


def print_usage():
    print("Usage: binding1 binding2 ...")
    print("Binding without dump: TcpPort:SerialPort@baudRate")
    print("Binding with dump: TcpPort::SerialPort@baudRate")


def print_help():
    print(f"\n{__CODE_NAME__} v{__CODE_VERSION__}")
    print(f"Author: {__CODE_AUTHOR__} | Date: {__CODE_DATE__}\n")
    print_usage()
    print("\nCOMMUNICATION SETTINGS:")
    print(f"  -a, --address ADDR   IP address to bind (default: {DEFAULT_ADDRESS})")
    print(f"  --chunksize N        Max bytes forwarded per copy step (default: {DEFAULT_CHUNK_SIZE})")
    print(f"  --pollinterval NS    Serial poll interval in nanoseconds (default: one byte time at the baud rate)")
    print("\nSECURITY:")
    print(f"  --secauto            Enable SSL with auto-generated certificate (default: False)")
    print(f"  --sec CERT,KEY       Enable SSL using provided files (default: None)")
    print("\nLOGGING:")
    print(f"  --log FILE[,new]     Log messages to FILE (default: None)")
    print(f"  --logmax N           Max number of rotated logs (default: 10)")
    print(f"  --logsizemax N       Max size of log file in kB (default: 4096)")
    print("\nINTERFACE & DEBUG:")
    print(f"  --cfgfile FILE       INI file with options in [DEFAULT] and bindings in [{BINDINGS_SECTION}]")
    print(f"  --debug              Enable verbose debug messages (default: False)")
    print(f"  --color              Enable colored output (default: False)")
    print(f"  --mono               Disable colors even if --color is set (default: False)")
    print(f"  -b, --batch          Batch mode: no screen output (default: False)")
    print(f"  --version            Show program version and exit")
    print(f"  -h, --help           Show this help information")


def handle_sigint(signum, frame):
    state.keep_running = False


def main(argv=None):
    state.keep_running = True
    try:
        args, bindings = load_hierarchical_config(argv)
    except (OSError, ValueError, configparser.Error) as e:
        print(f"[ERROR] Invalid configuration: {e}")
        return 1

    if args.h or args.help:
        print_help()
        return 0
    if args.version:
        print(f"{__CODE_NAME__} ({__CODE_VERSION__})")
        return 0

    if not bindings:
        print_usage()
        return 0

    if not validate_args(args):
        return 1

    logger = ProxyLogger(color=args.color and not args.mono, debug=args.debug, batch=args.batch,
                         log_file=get_log_filename(args.log, args.logmax),
                         logmax=args.logmax, logsizemax=args.logsizemax)
    try:
        ssl_context = build_ssl_context(args, logger)
    except (OSError, ValueError, ssl.SSLError) as e:
        print(f"[ERROR] SSL setup failed: {e}")
        return 1

    poll_interval = args.pollinterval / 1_000_000_000 if args.pollinterval else None
    proxy = SerialProxy(logger, address=args.address or DEFAULT_ADDRESS, chunk_size=args.chunksize,
                        poll_interval=poll_interval, ssl_context=ssl_context)
    for binding in bindings:
        try:
            add_binding(proxy, binding)
        except (ValueError, ConfigurationError):
            print(f"[ERROR] Invalid binding: {binding}")
            return 1

    if not args.batch:
        print(f"{__CODE_NAME__} v{__CODE_VERSION__} ({__CODE_DATE__}) by {__CODE_AUTHOR__}")
    if sys.platform == "win32" and args.color and not args.mono: os.system('color')

    signal.signal(signal.SIGINT, handle_sigint)
    state.start_time = time.time()
    logger.log("# --- com2tcp is starting ---", Colors.GREEN)
    logger.log(f"Config: SSL={'ENABLED' if ssl_context else 'DISABLED'} | Address={proxy.address} | "
               f"Bindings={', '.join(bindings)}", Colors.YELLOW)
    proxy.launch()

    try:
        while state.keep_running and proxy.running:
            time.sleep(0.2)
        if state.keep_running:
            logger.error("No listener is running, stopping.")
    finally:
        logger.log("# --- com2tcp is stopping ---", Colors.RED)
        proxy.shutdown()

    if not args.batch:
        uptime = datetime.timedelta(seconds=int(time.time() - state.start_time))
        sessions = sum(b.sessions for b in proxy.port_bindings.values())
        print(f"\n{__TXT_SUMMARY__}\n{__CODE_NAME__}")
        if not state.keep_running:
            print("Proxy shutdown initiated by user (CTRL-C detected).")
        print(f"Uptime: {uptime} | Total sessions: {sessions}")
        print(f"End time: {datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
    return 0 if not state.keep_running else 1


if __name__ == "__main__": sys.exit(main())
