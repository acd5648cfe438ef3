import os
import sys
import time
import socket
import pytest
import requests
import hellodocker

from contextlib import contextmanager
from multiprocessing import Process, set_start_method

HOST = "127.0.0.1"


def free_port(host=HOST):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def _serve(application, host, port):
    with mute_output():
        hellodocker.run(application, host, port)


class ServerProcess:
    def __init__(self, application=None, host=HOST, port=None) -> None:
        self.host = host
        self.port = port if port is not None else free_port(host)
        self.endpoint = f"http://{self.host}:{self.port}"
        self.process = Process(target=_serve, args=(application, self.host, self.port))

    def start(self, timeout=5.0):
        self.process.start()
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                requests.get(self.endpoint, timeout=0.5)
                return
            except requests.ConnectionError:
                time.sleep(0.05)
        raise RuntimeError(f"Server at {self.endpoint} did not start")

    def terminate(self, timeout=5.0):
        self.process.terminate()
        self.process.join(timeout)
        if self.process.is_alive():
            self.process.kill()
            self.process.join()
        return self.process.exitcode


@contextmanager
def mute_output():
    old_out = sys.stdout
    old_err = sys.stderr
    with open(os.devnull, "w") as devnull:
        sys.stdout = devnull
        sys.stderr = devnull
        try:
            yield
        finally:
            sys.stdout = old_out
            sys.stderr = old_err


def pytest_sessionstart(session):
    set_start_method("fork", force=True)


@pytest.fixture(scope="session")
def greeting_server():
    server_process = ServerProcess()
    server_process.start()
    yield server_process
    server_process.terminate()


@pytest.fixture
def server_process():
    @contextmanager
    def _server_process(application=None):
        process = ServerProcess(application)
        process.start()
        try:
            yield process
        finally:
            process.terminate()

    return _server_process


@pytest.fixture
def app():
    return hellodocker.create_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def local_server():
    server = hellodocker._Server()
    yield server
    server.shutdown()
    server.close()
