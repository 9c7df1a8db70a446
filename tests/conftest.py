import logging
import threading
import time

import paramiko
import pytest

from dispatch import ChannelHandler, RequestHandler
from honeypot_logging import ROOT_LOGGER_NAME
from host_keys import generate_host_key
from ssh_honeypot import HoneypotServer, Listener, build_server_config


def wait_for(predicate, timeout=10.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def messages(caplog, text):
    return [record for record in caplog.records if record.getMessage() == text]


class RecordingRequestHandler(RequestHandler):
    def __init__(self):
        self.calls = []
        self.requests = []
        self.finished = threading.Event()

    def handle(self, remote_addr, category, requests):
        self.calls.append((remote_addr, category))
        for request in requests:
            self.requests.append(request)
        self.finished.set()


class RecordingChannelHandler(ChannelHandler):
    def __init__(self, on_channel=None):
        self.on_channel = on_channel
        self.channels = []
        self.requests = []
        self.finished = []
        self._lock = threading.Lock()

    def handle(self, remote_addr, channel):
        with self._lock:
            self.channels.append((time.monotonic(), remote_addr, channel))
        if self.on_channel is not None:
            self.on_channel(channel)
        for request in channel.requests:
            self.requests.append(request)
        with self._lock:
            self.finished.append(channel)


@pytest.fixture(autouse=True)
def reset_honeypy_logger():
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture(scope="session")
def host_identity():
    return generate_host_key()


@pytest.fixture
def start_server(host_identity):
    """Factory starting a honeypot on an ephemeral localhost port."""
    running = []

    def start(request_handler=None, channel_handler=None, **config):
        request_handler = request_handler or RecordingRequestHandler()
        channel_handler = channel_handler or RecordingChannelHandler()
        server_config = build_server_config(
            "SSH-2.0-OpenSSH_8.9p1", host_identity, **config
        )
        listener = Listener("127.0.0.1", 0).bind()
        server = HoneypotServer(
            listener, server_config, request_handler, channel_handler
        )
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        running.append((server, thread))
        return listener.address[1], request_handler, channel_handler

    yield start

    for server, thread in running:
        server.shutdown()
        thread.join(5)


@pytest.fixture
def connect():
    clients = []

    def connect(port, username="root", password="hunter2"):
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        client.connect(
            "127.0.0.1", port=port, username=username, password=password,
            look_for_keys=False, allow_agent=False, timeout=10,
        )
        clients.append(client)
        return client

    yield connect

    for client in clients:
        client.close()
