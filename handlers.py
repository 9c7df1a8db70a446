"""
Default request and channel handlers. They log everything the client asks
for without emulating a shell.
"""

import logging
import threading

from dispatch import ChannelHandler, EventStream, OpenedChannel, RequestHandler

handlers_logger = logging.getLogger("honeypy.handlers")


def _printable(value):
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class LoggingRequestHandler(RequestHandler):
    """Logs each global request with the answer the client got."""

    def handle(self, remote_addr: str, category: str, requests: EventStream) -> None:
        for request in requests:
            handlers_logger.info(
                "Global request",
                extra={
                    "client": remote_addr,
                    "category": category,
                    "request_type": request.kind,
                    "accepted": request.accepted,
                    "payload": {k: _printable(v) for k, v in request.payload.items()},
                },
            )


class LoggingChannelHandler(ChannelHandler):
    """Logs a channel's requests and input until the client closes it."""

    def __init__(self, read_size: int = 1024):
        self.read_size = read_size

    def handle(self, remote_addr: str, channel: OpenedChannel) -> None:
        handlers_logger.info(
            "New channel",
            extra={"client": remote_addr, "channel_type": channel.kind, **channel.extra},
        )

        reader = threading.Thread(
            target=self._log_input, args=(remote_addr, channel), daemon=True
        )
        reader.start()

        for request in channel.requests:
            handlers_logger.info(
                "Channel request",
                extra={
                    "client": remote_addr,
                    "channel_type": channel.kind,
                    "request_type": request.kind,
                    "accepted": request.accepted,
                    "payload": {k: _printable(v) for k, v in request.payload.items()},
                },
            )

        reader.join()
        handlers_logger.info(
            "Channel closed",
            extra={"client": remote_addr, "channel_type": channel.kind},
        )

    def _log_input(self, remote_addr: str, channel: OpenedChannel) -> None:
        try:
            while True:
                data = channel.channel.recv(self.read_size)
                if not data:
                    break
                handlers_logger.info(
                    "Channel input",
                    extra={
                        "client": remote_addr,
                        "channel_type": channel.kind,
                        "input": _printable(data),
                    },
                )
        finally:
            channel.close()
