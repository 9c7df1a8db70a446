"""
SSH Honeypot module: accepts SSH connections, records every password
attempt and hands each connection's global requests and channels to
request and channel handlers.
"""

import enum
import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, Optional

import paramiko

from dispatch import (
    GLOBAL_CATEGORY,
    ChannelHandler,
    EventStream,
    OpenedChannel,
    Request,
    RequestHandler,
    TaskGroup,
)
from host_keys import HostIdentity

# ----- Logging ------------------------------------------------------------

funnel_logger = logging.getLogger("honeypy.ssh")
creds_logger = logging.getLogger("honeypy.creds")

# ----- Global settings ----------------------------------------------------

DEFAULT_SERVER_VERSION = "SSH-2.0-sshesame"
ACCEPT_POLL_INTERVAL = 0.5
CHANNEL_POLL_INTERVAL = 0.5
AUTH_POLL_INTERVAL = 0.5
DISCONNECT_GRACE_PERIOD = 5.0


class ListenError(Exception):
    """The listening socket could not be set up."""


# ----- Authentication policy ----------------------------------------------

@dataclass(frozen=True)
class AuthAttempt:
    client: str
    username: str
    password: str
    client_version: str


def accept_all(attempt: AuthAttempt) -> bool:
    return True


def log_auth_attempt(attempt: AuthAttempt, accepted: bool) -> None:
    creds_logger.info(
        "Password authentication %s",
        "accepted" if accepted else "rejected",
        extra={
            "client": attempt.client,
            "user": attempt.username,
            "password": attempt.password,
            "version": attempt.client_version,
        },
    )


@dataclass(frozen=True)
class AuthenticationPolicy:
    """Decides password attempts and reports each one to an observer.

    The default decision accepts everything; credential capture happens in
    the observer, so a real gate can replace `decide` without losing the
    audit trail.
    """

    decide: Callable[[AuthAttempt], bool] = accept_all
    observe: Callable[[AuthAttempt, bool], None] = log_auth_attempt

    def check_password(self, attempt: AuthAttempt) -> bool:
        accepted = bool(self.decide(attempt))
        self.observe(attempt, accepted)
        return accepted


# ----- Server configuration -----------------------------------------------

# Session requests a real OpenSSH server would normally grant.
DEFAULT_CHANNEL_REQUESTS = frozenset({
    "pty-req",
    "env",
    "shell",
    "exec",
    "window-change",
})


@dataclass(frozen=True)
class ServerConfig:
    server_version: str
    host_identity: HostIdentity
    auth_policy: AuthenticationPolicy = field(default_factory=AuthenticationPolicy)
    handshake_timeout: Optional[float] = None
    session_timeout: Optional[float] = None
    accepted_global_requests: FrozenSet[str] = frozenset()
    accepted_channel_requests: FrozenSet[str] = DEFAULT_CHANNEL_REQUESTS

    def accepts_global_request(self, kind: str) -> bool:
        return kind in self.accepted_global_requests

    def accepts_channel_request(self, channel_type: str, kind: str) -> bool:
        return channel_type == "session" and kind in self.accepted_channel_requests


def build_server_config(server_version: str, host_identity: HostIdentity,
                        auth_policy: Optional[AuthenticationPolicy] = None,
                        handshake_timeout: Optional[float] = None,
                        session_timeout: Optional[float] = None,
                        accepted_global_requests: Iterable[str] = (),
                        accepted_channel_requests: Iterable[str] = DEFAULT_CHANNEL_REQUESTS,
                        ) -> ServerConfig:
    """Assemble the configuration shared read-only by every connection.

    RFC 4253 requires the version string to start with "SSH-2.0-"; that is
    left to the caller.
    """
    return ServerConfig(
        server_version=server_version,
        host_identity=host_identity,
        auth_policy=auth_policy or AuthenticationPolicy(),
        handshake_timeout=handshake_timeout,
        session_timeout=session_timeout,
        accepted_global_requests=frozenset(accepted_global_requests),
        accepted_channel_requests=frozenset(accepted_channel_requests),
    )


def format_address(addr) -> str:
    host, port = addr[0], addr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


# ----- Paramiko server interface ------------------------------------------

class HoneypotServerInterface(paramiko.ServerInterface):
    """Answers paramiko's callbacks for one connection.

    Password attempts go through the authentication policy. Global and
    channel requests are answered straight away from the configured accept
    sets, then queued onto the streams the handlers consume. The transport
    thread never waits on a handler.
    """

    def __init__(self, remote_addr: str, transport: paramiko.Transport,
                 server_config: ServerConfig, global_requests: EventStream):
        self.remote_addr = remote_addr
        self.transport = transport
        self.server_config = server_config
        self.global_requests = global_requests
        self.authenticated = threading.Event()
        self._channels: Dict[int, OpenedChannel] = {}
        self._lock = threading.Lock()

    # -- authentication

    def get_allowed_auths(self, username):
        return "password"

    def check_auth_password(self, username, password):
        attempt = AuthAttempt(
            client=self.remote_addr,
            username=username,
            password=password,
            client_version=self.transport.remote_version or "",
        )
        if self.server_config.auth_policy.check_password(attempt):
            self.authenticated.set()
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    # -- global requests

    def _global_request(self, kind, **payload) -> Request:
        request = Request(
            kind, payload, self.server_config.accepts_global_request(kind)
        )
        self.global_requests.put(request)
        return request

    def check_global_request(self, kind, msg):
        return self._global_request(kind, data=msg.get_remainder()).accepted

    def check_port_forward_request(self, address, port):
        request = self._global_request("tcpip-forward", address=address, port=port)
        # paramiko reads a bound port of 0 as a refusal.
        if not request.accepted or port == 0:
            return False
        return port

    def cancel_port_forward_request(self, address, port):
        self._global_request("cancel-tcpip-forward", address=address, port=port)

    # -- channels

    def _open_channel(self, kind, chanid, **extra):
        with self._lock:
            self._channels[chanid] = OpenedChannel(kind, chanid, extra)
        return paramiko.OPEN_SUCCEEDED

    def check_channel_request(self, kind, chanid):
        return self._open_channel(kind, chanid)

    def check_channel_direct_tcpip_request(self, chanid, origin, destination):
        return self._open_channel(
            "direct-tcpip", chanid,
            origin=format_address(origin),
            destination=format_address(destination),
        )

    def claim_channel(self, channel: paramiko.Channel) -> Optional[OpenedChannel]:
        with self._lock:
            opened = self._channels.get(channel.get_id())
        if opened is not None:
            opened.channel = channel
        return opened

    def release_channel(self, opened: OpenedChannel) -> None:
        with self._lock:
            self._channels.pop(opened.chanid, None)

    def close_channels(self) -> None:
        with self._lock:
            channels = list(self._channels.values())
        for opened in channels:
            opened.requests.close()

    # -- channel requests

    def _channel_request(self, channel, kind, **payload) -> bool:
        with self._lock:
            opened = self._channels.get(channel.get_id())
        if opened is None:
            return False
        accepted = self.server_config.accepts_channel_request(opened.kind, kind)
        opened.requests.put(Request(kind, payload, accepted))
        return accepted

    def check_channel_pty_request(self, channel, term, width, height,
                                  pixelwidth, pixelheight, modes):
        return self._channel_request(
            channel, "pty-req", term=term, width=width, height=height,
            pixel_width=pixelwidth, pixel_height=pixelheight,
        )

    def check_channel_shell_request(self, channel):
        return self._channel_request(channel, "shell")

    def check_channel_exec_request(self, channel, command):
        return self._channel_request(channel, "exec", command=command)

    def check_channel_subsystem_request(self, channel, name):
        return self._channel_request(channel, "subsystem", name=name)

    def check_channel_env_request(self, channel, name, value):
        return self._channel_request(channel, "env", name=name, value=value)

    def check_channel_window_change_request(self, channel, width, height,
                                            pixelwidth, pixelheight):
        return self._channel_request(
            channel, "window-change", width=width, height=height,
            pixel_width=pixelwidth, pixel_height=pixelheight,
        )

    def check_channel_x11_request(self, channel, single_connection,
                                  auth_protocol, auth_cookie, screen_number):
        return self._channel_request(
            channel, "x11-req", single_connection=single_connection,
            auth_protocol=auth_protocol, auth_cookie=auth_cookie,
            screen_number=screen_number,
        )

    def check_channel_forward_agent_request(self, channel):
        return self._channel_request(channel, "auth-agent-req@openssh.com")


# ----- Connection supervisor ----------------------------------------------

class ConnectionState(enum.Enum):
    ACCEPTED = "accepted"
    HANDSHAKING = "handshaking"
    ESTABLISHED = "established"
    DISPATCHING = "dispatching"
    CLOSED = "closed"


class ConnectionSupervisor:
    """Runs one accepted connection from handshake to disconnect."""

    def __init__(self, client: socket.socket, addr, server_config: ServerConfig,
                 request_handler: RequestHandler, channel_handler: ChannelHandler):
        self.client = client
        self.remote_addr = format_address(addr)
        self.server_config = server_config
        self.request_handler = request_handler
        self.channel_handler = channel_handler
        self.state = ConnectionState.ACCEPTED
        self.global_requests = EventStream()
        self.tasks = TaskGroup(self.remote_addr)
        self.transport: Optional[paramiko.Transport] = None
        self.interface: Optional[HoneypotServerInterface] = None

    def run(self) -> None:
        try:
            if self._handshake():
                self._dispatch()
        except Exception:
            funnel_logger.exception(
                "Connection failed", extra={"client": self.remote_addr}
            )
        finally:
            self._close()

    def _handshake(self) -> bool:
        self.state = ConnectionState.HANDSHAKING
        config = self.server_config
        try:
            self.transport = paramiko.Transport(self.client)
            self.transport.local_version = config.server_version
            self.transport.add_server_key(config.host_identity.key)
            if config.handshake_timeout is not None:
                self.transport.banner_timeout = config.handshake_timeout
                self.transport.handshake_timeout = config.handshake_timeout
            self.interface = HoneypotServerInterface(
                self.remote_addr, self.transport, config, self.global_requests
            )
            self.transport.start_server(server=self.interface)
            self._wait_for_auth()
        except Exception as error:
            funnel_logger.warning(
                "Failed to establish SSH connection",
                extra={"client": self.remote_addr, "error": str(error)},
            )
            return False

        self.state = ConnectionState.ESTABLISHED
        funnel_logger.info(
            "SSH connection established", extra={"client": self.remote_addr}
        )
        return True

    def _wait_for_auth(self) -> None:
        timeout = self.server_config.handshake_timeout
        waited = 0.0
        while not self.interface.authenticated.wait(AUTH_POLL_INTERVAL):
            if not self.transport.is_active():
                error = self.transport.get_exception()
                raise error or EOFError("client closed the connection before authenticating")
            waited += AUTH_POLL_INTERVAL
            if timeout is not None and waited >= timeout:
                raise paramiko.SSHException("authentication timed out")

    def _dispatch(self) -> None:
        self.state = ConnectionState.DISPATCHING
        self.tasks.spawn(
            "global-requests", self.request_handler.handle,
            self.remote_addr, GLOBAL_CATEGORY, self.global_requests
        )
        self.tasks.spawn("channels", self._dispatch_channels)

        self.transport.join(self.server_config.session_timeout)
        if self.transport.is_alive():
            funnel_logger.info(
                "Session timed out", extra={"client": self.remote_addr}
            )

    def _channel_stream(self) -> Iterator[OpenedChannel]:
        while self.transport.is_active():
            channel = self.transport.accept(CHANNEL_POLL_INTERVAL)
            if channel is None:
                continue
            opened = self.interface.claim_channel(channel)
            if opened is not None:
                yield opened

    def _dispatch_channels(self) -> None:
        for opened in self._channel_stream():
            self.tasks.spawn(
                f"channel-{opened.chanid}", self._handle_channel, opened
            )

    def _handle_channel(self, opened: OpenedChannel) -> None:
        try:
            self.channel_handler.handle(self.remote_addr, opened)
        finally:
            self.interface.release_channel(opened)
            opened.close()

    def _close(self) -> None:
        established = self.state is ConnectionState.DISPATCHING
        if self.transport is not None:
            self.transport.close()
        self.global_requests.close()
        if self.interface is not None:
            self.interface.close_channels()
        self.client.close()

        if established:
            if not self.tasks.join(DISCONNECT_GRACE_PERIOD):
                funnel_logger.warning(
                    "Connection tasks still running after disconnect",
                    extra={"client": self.remote_addr, "tasks": self.tasks.alive},
                )
            funnel_logger.info(
                "Client disconnected", extra={"client": self.remote_addr}
            )
        self.state = ConnectionState.CLOSED


# ----- Listener and accept loop -------------------------------------------

class Listener:
    """A bound TCP socket producing one raw connection per accept()."""

    def __init__(self, host: str, port: int, backlog: int = 100):
        self.host = host
        self.port = port
        self.backlog = backlog
        self._socket: Optional[socket.socket] = None

    def bind(self) -> "Listener":
        try:
            infos = socket.getaddrinfo(
                self.host, self.port, type=socket.SOCK_STREAM,
                flags=socket.AI_PASSIVE
            )
        except socket.gaierror as error:
            raise ListenError(f"cannot resolve {self.host}: {error}") from error

        last_error = None
        for family, socktype, proto, _, sockaddr in infos:
            server_socket = socket.socket(family, socktype, proto)
            try:
                server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                server_socket.bind(sockaddr)
                server_socket.listen(self.backlog)
            except OSError as error:
                server_socket.close()
                last_error = error
                continue
            server_socket.settimeout(ACCEPT_POLL_INTERVAL)
            self._socket = server_socket
            break
        else:
            raise ListenError(
                f"cannot listen on {self.host}:{self.port}: {last_error}"
            ) from last_error

        funnel_logger.info(
            "Listening", extra={"listen_address": format_address(self.address)}
        )
        return self

    @property
    def address(self):
        return self._socket.getsockname()

    def accept(self):
        return self._socket.accept()

    def close(self) -> None:
        if self._socket is not None:
            self._socket.close()


class HoneypotServer:
    """Accept loop: one supervisor thread per inbound connection."""

    def __init__(self, listener: Listener, server_config: ServerConfig,
                 request_handler: RequestHandler, channel_handler: ChannelHandler):
        self.listener = listener
        self.server_config = server_config
        self.request_handler = request_handler
        self.channel_handler = channel_handler
        self._stopped = threading.Event()

    def serve_forever(self) -> None:
        try:
            while not self._stopped.is_set():
                try:
                    client, addr = self.listener.accept()
                except socket.timeout:
                    continue
                except OSError as error:
                    if self._stopped.is_set():
                        break
                    funnel_logger.warning(
                        "Failed to accept connection", extra={"error": str(error)}
                    )
                    continue

                funnel_logger.info(
                    "Client connected", extra={"client": format_address(addr)}
                )
                supervisor = ConnectionSupervisor(
                    client, addr, self.server_config,
                    self.request_handler, self.channel_handler
                )
                thread = threading.Thread(
                    target=supervisor.run,
                    name=f"connection-{format_address(addr)}",
                    daemon=True
                )
                thread.start()
        finally:
            self.listener.close()

    def shutdown(self) -> None:
        self._stopped.set()
