import logging
import socket
import threading
import time

import paramiko
import pytest

from conftest import (
    RecordingChannelHandler,
    RecordingRequestHandler,
    messages,
    wait_for,
)
from dispatch import EventStream
from ssh_honeypot import (
    HoneypotServer,
    HoneypotServerInterface,
    Listener,
    ListenError,
    build_server_config,
)


@pytest.fixture(autouse=True)
def capture_info(caplog):
    caplog.set_level(logging.INFO, logger="honeypy")


def test_password_session_and_disconnect(start_server, connect, caplog):
    port, request_handler, channel_handler = start_server()

    client = connect(port, username="root", password="hunter2")

    accepted = messages(caplog, "Password authentication accepted")
    assert len(accepted) == 1
    assert accepted[0].user == "root"
    assert accepted[0].password == "hunter2"
    assert accepted[0].version.startswith("SSH-2.0-paramiko")
    assert wait_for(lambda: messages(caplog, "SSH connection established"))
    assert messages(caplog, "Client connected")

    session = client.get_transport().open_session()
    assert wait_for(lambda: len(channel_handler.channels) == 1)
    _, remote_addr, opened = channel_handler.channels[0]
    assert opened.kind == "session"
    assert remote_addr == accepted[0].client
    assert wait_for(lambda: request_handler.calls == [(remote_addr, "global")])

    session.close()
    client.close()

    assert wait_for(lambda: messages(caplog, "Client disconnected"))
    assert request_handler.finished.is_set()
    assert channel_handler.finished == [opened]
    assert len(channel_handler.channels) == 1


def test_channel_requests_reach_the_handler(start_server, connect):
    port, _, channel_handler = start_server()
    client = connect(port)

    session = client.get_transport().open_session()
    session.get_pty(term="xterm", width=120, height=40)
    session.exec_command("uname -a")

    assert wait_for(lambda: len(channel_handler.requests) == 2)
    pty, exec_ = channel_handler.requests
    assert pty.kind == "pty-req"
    assert pty.accepted
    assert pty.payload["width"] == 120
    assert exec_.kind == "exec"
    assert exec_.accepted
    assert exec_.payload["command"] == b"uname -a"
    assert channel_handler.channels[0][2].channel is not None


def test_global_requests_are_dispatched_in_order(start_server, connect):
    port, request_handler, _ = start_server()
    client = connect(port)
    transport = client.get_transport()

    for kind in ("first@example.com", "second@example.com", "third@example.com"):
        assert transport.global_request(kind, wait=True) is None

    assert wait_for(lambda: len(request_handler.requests) == 3)
    assert [r.kind for r in request_handler.requests] == [
        "first@example.com", "second@example.com", "third@example.com"
    ]
    assert not any(r.accepted for r in request_handler.requests)


def test_slow_channel_does_not_block_the_next(start_server, connect):
    release = threading.Event()
    blocked = []

    def on_channel(channel):
        if not blocked:
            blocked.append(channel)
            release.wait(30)

    channel_handler = RecordingChannelHandler(on_channel=on_channel)
    port, _, _ = start_server(channel_handler=channel_handler)
    transport = connect(port).get_transport()

    try:
        first_session = transport.open_session()
        assert wait_for(lambda: len(channel_handler.channels) == 1)
        # The stuck handler never reads this request; it is answered anyway.
        first_session.get_pty()
        opened_at = time.monotonic()
        transport.open_session()
        assert wait_for(lambda: len(channel_handler.channels) == 2, timeout=5)
        assert channel_handler.channels[1][0] - opened_at < 1.0
        assert not release.is_set()
    finally:
        release.set()

    first, second = channel_handler.channels
    assert second[2] is not first[2]


def test_slow_request_handler_does_not_block_channels(start_server, connect):
    release = threading.Event()

    class StuckRequestHandler(RecordingRequestHandler):
        def handle(self, remote_addr, category, requests):
            release.wait(30)
            super().handle(remote_addr, category, requests)

    channel_handler = RecordingChannelHandler()
    port, _, _ = start_server(
        request_handler=StuckRequestHandler(), channel_handler=channel_handler
    )
    transport = connect(port).get_transport()

    try:
        started = time.monotonic()
        assert transport.global_request("keepalive@openssh.com", wait=True) is None
        transport.open_session()
        assert wait_for(lambda: len(channel_handler.channels) == 1, timeout=5)
        assert channel_handler.channels[0][0] - started < 2.0
    finally:
        release.set()


def test_accepted_port_forward_is_granted(start_server, connect):
    port, request_handler, _ = start_server(
        accepted_global_requests={"tcpip-forward"}
    )
    transport = connect(port).get_transport()

    assert transport.request_port_forward("127.0.0.1", 2222) == 2222
    assert wait_for(lambda: len(request_handler.requests) == 1)
    request = request_handler.requests[0]
    assert request.kind == "tcpip-forward"
    assert request.accepted
    assert request.payload == {"address": "127.0.0.1", "port": 2222}


def test_port_forward_declined_by_default(start_server, connect):
    port, request_handler, _ = start_server()
    transport = connect(port).get_transport()

    with pytest.raises(paramiko.SSHException):
        transport.request_port_forward("127.0.0.1", 2222)
    assert wait_for(lambda: len(request_handler.requests) == 1)
    assert not request_handler.requests[0].accepted


def test_listener_survives_failed_handshakes(start_server, connect, caplog):
    port, _, channel_handler = start_server()

    for _ in range(50):
        with socket.create_connection(("127.0.0.1", port)) as bad_client:
            bad_client.sendall(b"GET / HTTP/1.0\r\n\r\n")

    assert wait_for(
        lambda: len(messages(caplog, "Failed to establish SSH connection")) >= 50,
        timeout=60,
    )
    assert not messages(caplog, "Client disconnected")

    client = connect(port)
    client.get_transport().open_session()
    assert wait_for(lambda: len(channel_handler.channels) == 1)


def test_handshake_timeout_drops_silent_clients(start_server, caplog):
    port, _, _ = start_server(handshake_timeout=1)

    with socket.create_connection(("127.0.0.1", port)) as silent_client:
        started = time.monotonic()
        assert wait_for(
            lambda: messages(caplog, "Failed to establish SSH connection"),
            timeout=15,
        )
        assert time.monotonic() - started < 15


def test_session_timeout_closes_established_connections(start_server, connect, caplog):
    port, _, _ = start_server(session_timeout=1)
    connect(port)

    assert wait_for(lambda: messages(caplog, "Session timed out"), timeout=10)
    assert wait_for(lambda: messages(caplog, "Client disconnected"), timeout=10)


def test_listen_on_used_port_fails(start_server):
    port, _, _ = start_server()

    with pytest.raises(ListenError):
        Listener("127.0.0.1", port).bind()


def test_listen_on_unresolvable_host_fails():
    with pytest.raises(ListenError):
        Listener("host.invalid", 0).bind()


def test_listener_logs_bound_address(caplog):
    listener = Listener("127.0.0.1", 0).bind()
    try:
        record = messages(caplog, "Listening")[0]
        assert record.listen_address == f"127.0.0.1:{listener.address[1]}"
    finally:
        listener.close()


def test_transient_accept_errors_are_logged_and_skipped(host_identity, caplog):
    class FlakyListener:
        calls = 0
        closed = False

        def accept(self):
            self.calls += 1
            if self.calls == 1:
                raise OSError(24, "Too many open files")
            server.shutdown()
            raise socket.timeout()

        def close(self):
            self.closed = True

    listener = FlakyListener()
    server = HoneypotServer(
        listener, build_server_config("SSH-2.0-test", host_identity),
        RecordingRequestHandler(), RecordingChannelHandler(),
    )

    server.serve_forever()

    assert listener.calls == 2
    assert listener.closed
    warnings = messages(caplog, "Failed to accept connection")
    assert len(warnings) == 1
    assert warnings[0].levelno == logging.WARNING


class StubChannel:
    def __init__(self, chanid):
        self.chanid = chanid

    def get_id(self):
        return self.chanid


def make_interface(host_identity, **config):
    return HoneypotServerInterface(
        "192.0.2.9:1234", None,
        build_server_config("SSH-2.0-test", host_identity, **config),
        EventStream(),
    )


def test_port_forward_to_port_zero_is_refused(host_identity):
    interface = make_interface(host_identity, accepted_global_requests={"tcpip-forward"})

    assert interface.check_port_forward_request("0.0.0.0", 0) is False
    assert interface.check_port_forward_request("0.0.0.0", 8022) == 8022

    interface.global_requests.close()
    assert [r.payload["port"] for r in interface.global_requests] == [0, 8022]


def test_channel_requests_answered_by_channel_type(host_identity):
    interface = make_interface(host_identity)
    interface.check_channel_request("session", 1)
    interface.check_channel_direct_tcpip_request(
        2, ("10.0.0.1", 5555), ("example.com", 80)
    )

    assert interface.check_channel_exec_request(StubChannel(1), b"id") is True
    assert interface.check_channel_subsystem_request(StubChannel(1), "sftp") is False
    assert interface.check_channel_exec_request(StubChannel(2), b"id") is False
    assert interface.check_channel_shell_request(StubChannel(99)) is False
