"""
Host key provisioning. Loads the server's identity key from a file or
generates a temporary one for the lifetime of the process.
"""

import enum
import hashlib
import io
import logging
from dataclasses import dataclass
from typing import Optional

import paramiko
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

keys_logger = logging.getLogger("honeypy.keys")

# Tried in order when parsing a key file.
KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


class HostKeyError(Exception):
    """Base class for failures that prevent the server from starting."""


class KeyReadError(HostKeyError):
    pass


class KeyParseError(HostKeyError):
    pass


class KeyGenError(HostKeyError):
    pass


class Provenance(enum.Enum):
    PERSISTENT = "persistent"
    EPHEMERAL = "ephemeral"


@dataclass(frozen=True)
class HostIdentity:
    """The server's signing key and where it came from."""

    key: paramiko.PKey
    provenance: Provenance

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.key.asbytes()).hexdigest()


def parse_private_key(data: bytes) -> paramiko.PKey:
    """Parse an unencrypted private key in any supported format."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as error:
        raise KeyParseError(f"host key is not a text key file: {error}") from error

    last_error = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text))
        except paramiko.PasswordRequiredException as error:
            raise KeyParseError("host key is protected by a passphrase") from error
        except (paramiko.SSHException, ValueError) as error:
            last_error = error
    raise KeyParseError(
        f"unsupported or corrupt private key: {last_error}"
    ) from last_error


def load_host_key(path: str) -> HostIdentity:
    try:
        with open(path, "rb") as key_file:
            data = key_file.read()
    except OSError as error:
        raise KeyReadError(f"{path}: {error.strerror or error}") from error
    return HostIdentity(parse_private_key(data), Provenance.PERSISTENT)


def generate_host_key() -> HostIdentity:
    """Generate an Ed25519 key that lives only in memory."""
    try:
        private_key = ed25519.Ed25519PrivateKey.generate()
    except (OSError, ValueError) as error:
        raise KeyGenError(f"failed to generate temporary private key: {error}") from error

    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )
    try:
        key = paramiko.Ed25519Key(file_obj=io.StringIO(pem.decode("ascii")))
    except paramiko.SSHException as error:
        raise KeyGenError(f"failed to parse generated private key: {error}") from error
    return HostIdentity(key, Provenance.EPHEMERAL)


def provision_host_key(path: Optional[str] = None) -> HostIdentity:
    """Return the host identity for this run.

    With a path, the key is loaded from that file; a missing or unreadable
    file raises KeyReadError and bytes that are not a supported private key
    raise KeyParseError. Without one, a fresh key is generated and its
    fingerprint logged so the operator knows it will not survive a restart.
    Nothing is ever written to disk.
    """
    if path:
        return load_host_key(path)

    identity = generate_host_key()
    keys_logger.warning(
        "Using a temporary host key, consider creating a permanent one "
        "and passing it to --host_key",
        extra={"sha256_fingerprint": identity.fingerprint},
    )
    return identity
