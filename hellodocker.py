import os
import sys
import errno
import socket
import signal
import logging
import threading
import click
from flask import Flask
from werkzeug.serving import get_sockaddr, make_server, select_address_family

GREETING = "Hello Docker World"

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080

LL_DISABLED    = 0
LL_FATAL_ERROR = 1
LL_CRIT_ERROR  = 2
LL_ERROR       = 3
LL_WARNING     = 4
LL_NOTICE      = 5
LL_INFO        = 6
LL_DEBUG       = 7
LL_TRACE       = 8

_LOGGING_LEVELS = {
    LL_DISABLED:    logging.CRITICAL + 1,
    LL_FATAL_ERROR: logging.CRITICAL,
    LL_CRIT_ERROR:  logging.CRITICAL,
    LL_ERROR:       logging.ERROR,
    LL_WARNING:     logging.WARNING,
    LL_NOTICE:      logging.INFO,
    LL_INFO:        logging.INFO,
    LL_DEBUG:       logging.DEBUG,
    LL_TRACE:       logging.DEBUG,
}

log = logging.getLogger("hellodocker")


def logging_level(loglevel):
    """Translate an ``LL_*`` level into a stdlib logging level."""
    if loglevel not in _LOGGING_LEVELS:
        raise ValueError(f"Unknown log level: {loglevel}")
    return _LOGGING_LEVELS[loglevel]


def configure_logging(loglevel):
    level = logging_level(loglevel)
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # werkzeug writes the per-request access log
    for name in ("hellodocker", "werkzeug"):
        logging.getLogger(name).setLevel(level)


class StartupBindFailure(OSError):
    """The listening socket could not be bound."""

    def __init__(self, host, port, error):
        super().__init__(error.errno, error.strerror)
        self.host = host
        self.port = port
        self.error = error

    def __str__(self):
        reason = self.error.strerror or str(self.error)
        return f"cannot bind {self.host}:{self.port}: {reason}"


def bind_socket(host, port):
    if not 0 <= port <= 65535:
        raise OSError(errno.EINVAL, f"port {port} is out of range 0-65535")
    family = select_address_family(host, port)
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(get_sockaddr(host, port, family))
        sock.listen(socket.SOMAXCONN)
    except OSError:
        sock.close()
        raise
    return sock

# -------------------------------------------------------------------------------------

def create_app():
    app = Flask("hellodocker")

    @app.get("/")
    def home():
        return app.response_class(GREETING, mimetype="text/plain")

    return app

# -------------------------------------------------------------------------------------

class _Server():
    def __init__(self):
        self.app = None
        self.host = DEFAULT_HOST
        self.port = DEFAULT_PORT
        self.loglevel = LL_ERROR
        self.hook_sigterm = 1           # translate SIGTERM into a graceful stop
        self.httpd = None
        self._serving = threading.Event()

    def init(self, app, host = None, port = None, loglevel = None):
        self.app = app
        self.host = host if host else self.host
        self.port = port if port is not None else self.port
        self.loglevel = loglevel if loglevel is not None else self.loglevel
        configure_logging(self.loglevel)
        if self.listening:
            self.close()
        try:
            sock = bind_socket(self.host, self.port)
        except OSError as e:
            log.error("Bind to %s:%s failed: %s", self.host, self.port, e)
            raise StartupBindFailure(self.host, self.port, e) from e
        try:
            self.httpd = make_server(self.host, self.port, self.app, threaded=True, fd=sock.fileno())
        finally:
            # make_server works on a duplicate of the descriptor
            sock.close()
        self.port = self.httpd.port
        log.debug("Listening on %s", self.endpoint)
        return 0

    @property
    def listening(self):
        return self.httpd is not None

    @property
    def endpoint(self):
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"

    def run(self):
        if not self.listening:
            raise RuntimeError("Server is not listening, call init() first")
        prev_handler = None
        hooked = self.hook_sigterm and threading.current_thread() is threading.main_thread()
        if hooked:
            prev_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
        self._serving.set()
        try:
            self.httpd.serve_forever()
        except KeyboardInterrupt:
            log.info("Interrupted, shutting down")
        finally:
            self._serving.clear()
            if hooked:
                signal.signal(signal.SIGTERM, prev_handler)
            self.close()
        return 0

    def _wait_serving(self, timeout = None):
        return self._serving.wait(timeout)

    def shutdown(self):
        httpd = self.httpd
        if httpd is not None and self._serving.is_set():
            httpd.shutdown()

    def close(self):
        if self.httpd is None:
            return 0
        self.httpd.server_close()
        self.httpd = None
        log.debug("Listener on %s:%s closed", self.host, self.port)
        return 0


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt()


server = _Server()

# -------------------------------------------------------------------------------------

@click.command()
@click.version_option(package_name="hellodocker", message="%(version)s")
@click.option("--host", help="Host the socket is bound to.", type=str, envvar="HOST",
              default=DEFAULT_HOST, show_default=True)
@click.option("-p", "--port", help="Port the socket is bound to.", type=click.IntRange(0, 65535),
              envvar=["SERVER_PORT", "PORT"], default=DEFAULT_PORT, show_default=True)
@click.option("-l", "--loglevel", help="Logging level.", type=click.IntRange(LL_DISABLED, LL_TRACE),
              envvar="LOGLEVEL", default=LL_ERROR, show_default=True)
def run_from_cli(host, port, loglevel):
    """
    Run the Hello Docker World service from CLI
    """
    try:
        server.init(create_app(), host, port, loglevel)
    except StartupBindFailure as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

    print(f"Hello Docker World service listening at {server.endpoint}")
    server.run()

# -------------------------------------------------------------------------------------

def run(app = None, host = None, port = None, loglevel = None):
    print("Hello Docker World service running on PID:", os.getpid())
    server.init(app if app is not None else create_app(), host, port, loglevel)
    print(f"Hello Docker World service listening at {server.endpoint}")
    return server.run()
