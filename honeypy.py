"""
Honeypy: command-line launcher for the SSH honeypot.

Every password is accepted and logged; the session's global requests and
channels are handed to the logging handlers.
"""

import argparse
import logging
import sys

from handlers import LoggingChannelHandler, LoggingRequestHandler
from honeypot_logging import setup_logger
from host_keys import HostKeyError, provision_host_key
from ssh_honeypot import (
    DEFAULT_SERVER_VERSION,
    HoneypotServer,
    Listener,
    ListenError,
    build_server_config,
)

logger = logging.getLogger("honeypy")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Honeypy: SSH credential honeypot"
    )
    parser.add_argument(
        "--host_key", type=str, default="",
        help="a file containing a private key to use "
             "(a temporary key is generated when empty)"
    )
    parser.add_argument(
        "--listen_address", type=str, default="localhost",
        help="the local address to listen on"
    )
    parser.add_argument(
        "--port", type=int, default=2022,
        help="the port number to listen on"
    )
    parser.add_argument(
        "--json_logging", action="store_true",
        help="enable logging in JSON"
    )
    parser.add_argument(
        "--server_version", type=str, default=DEFAULT_SERVER_VERSION,
        help="the version identification of the server (RFC 4253 section 4.2 "
             "requires that this string start with \"SSH-2.0-\")"
    )
    parser.add_argument(
        "--log_file", type=str, default=None,
        help="also write logs to this rotating file"
    )
    parser.add_argument(
        "--handshake_timeout", type=float, default=None,
        help="seconds a client may take to finish the handshake and "
             "authenticate (unbounded by default)"
    )
    parser.add_argument(
        "--session_timeout", type=float, default=None,
        help="seconds after which an established session is closed "
             "(unbounded by default)"
    )
    parser.add_argument(
        "--accept_global_request", action="append", default=[],
        metavar="KIND",
        help="global request type to answer with success, e.g. tcpip-forward "
             "(repeatable; all are declined by default)"
    )
    return parser


def run_ssh_honeypot(listener: Listener, server_config) -> None:
    server = HoneypotServer(
        listener, server_config, LoggingRequestHandler(), LoggingChannelHandler()
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Honeypot stopped by user")
        server.shutdown()


def main(argv=None) -> int:
    """Parse CLI arguments and run the honeypot until interrupted."""
    args = build_parser().parse_args(argv)
    setup_logger(json_logging=args.json_logging, log_file=args.log_file)

    try:
        host_identity = provision_host_key(args.host_key)
    except HostKeyError as error:
        logger.critical("Failed to set up host key: %s", error)
        return 1

    server_config = build_server_config(
        args.server_version,
        host_identity,
        handshake_timeout=args.handshake_timeout,
        session_timeout=args.session_timeout,
        accepted_global_requests=args.accept_global_request,
    )

    try:
        listener = Listener(args.listen_address, args.port).bind()
    except ListenError as error:
        logger.critical("Failed to listen: %s", error)
        return 1

    run_ssh_honeypot(listener, server_config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
