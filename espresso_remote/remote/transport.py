"""SSH transport used by remote sessions.

A session talks to the remote host only through the protocols defined here,
so tests and alternative backends can substitute their own implementation.
:class:`ParamikoTransport` is the default, built on ``paramiko``:

- host keys are accepted automatically (no known_hosts check)
- files are sent over SFTP into a work directory, created if absent
- the submission command runs on an exec channel that is polled without
  blocking
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

import paramiko

from espresso_remote.errors import TransportError

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096


@runtime_checkable
class FileChannel(Protocol):
    def send(self, local_path: Path, remote_name: str) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class ExecHandle(Protocol):
    def read_stdout(self) -> str: ...

    def read_stderr(self) -> str: ...

    def is_closed(self) -> bool: ...

    def exit_status(self) -> int: ...

    def close(self) -> None: ...


@runtime_checkable
class Connection(Protocol):
    def open_file_channel(self, work_directory: str | None) -> FileChannel: ...

    def open_exec_channel(self, command: str) -> ExecHandle: ...

    def close(self) -> None: ...


@runtime_checkable
class Transport(Protocol):
    def connect(
        self,
        host: str,
        port: int,
        user: str,
        *,
        password: str | None = None,
        key_path: str | None = None,
        timeout: float = 30.0,
    ) -> Connection: ...


# ─── paramiko implementation ────────────────────────────────────────────────


def ensure_remote_directory(sftp: paramiko.SFTPClient, remote_dir: str) -> None:
    """Change into ``remote_dir``, creating each missing component.

    Raises:
        OSError: If a component can neither be entered nor created.
    """
    try:
        sftp.chdir(remote_dir)
        logger.debug("Remote directory exists: %s", remote_dir)
        return
    except OSError:
        pass

    logger.info("Creating remote directory: %s", remote_dir)
    prefix = "/" if remote_dir.startswith("/") else ""
    path = ""
    for part in remote_dir.strip("/").split("/"):
        if not part:
            continue
        path = f"{path}/{part}" if path else f"{prefix}{part}"
        try:
            sftp.chdir(path)
        except OSError:
            sftp.mkdir(path)
            sftp.chdir(path)


class ParamikoFileChannel:
    """SFTP session rooted at the remote work directory."""

    def __init__(self, sftp: paramiko.SFTPClient):
        self._sftp = sftp
        self._closed = False

    def send(self, local_path: Path, remote_name: str) -> None:
        try:
            self._sftp.put(str(local_path), remote_name)
        except (OSError, paramiko.SSHException) as e:
            raise TransportError(f"failed to upload {local_path}: {e}") from e

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._sftp.close()


class ParamikoExecHandle:
    """Non-blocking view of a running exec channel."""

    def __init__(self, channel: paramiko.Channel):
        self._channel = channel
        self._closed = False

    def read_stdout(self) -> str:
        chunks = []
        while self._channel.recv_ready():
            chunks.append(self._channel.recv(_READ_CHUNK))
        return b"".join(chunks).decode("utf-8", errors="replace")

    def read_stderr(self) -> str:
        chunks = []
        while self._channel.recv_stderr_ready():
            chunks.append(self._channel.recv_stderr(_READ_CHUNK))
        return b"".join(chunks).decode("utf-8", errors="replace")

    def is_closed(self) -> bool:
        """True once the remote side closed the channel and no output is pending."""
        channel = self._channel
        if channel.recv_ready() or channel.recv_stderr_ready():
            return False
        return bool(channel.closed) or (channel.exit_status_ready() and bool(channel.eof_received))

    def exit_status(self) -> int:
        return self._channel.recv_exit_status()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._channel.close()


class ParamikoConnection:
    """An authenticated SSH connection."""

    def __init__(self, client: paramiko.SSHClient):
        self._client = client
        self._closed = False

    def open_file_channel(self, work_directory: str | None) -> ParamikoFileChannel:
        try:
            sftp = self._client.open_sftp()
        except (OSError, paramiko.SSHException) as e:
            raise TransportError(f"cannot open SFTP session: {e}") from e

        if work_directory and work_directory.strip():
            try:
                ensure_remote_directory(sftp, work_directory.strip())
            except OSError as e:
                sftp.close()
                raise TransportError(f"cannot use remote directory {work_directory}: {e}") from e
        return ParamikoFileChannel(sftp)

    def open_exec_channel(self, command: str) -> ParamikoExecHandle:
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise TransportError("SSH connection is not active")
        try:
            channel = transport.open_session()
            channel.exec_command(command)
        except (OSError, paramiko.SSHException) as e:
            raise TransportError(f"cannot execute remote command: {e}") from e
        return ParamikoExecHandle(channel)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._client.close()


class ParamikoTransport:
    """Default :class:`Transport` backed by ``paramiko.SSHClient``."""

    def connect(
        self,
        host: str,
        port: int,
        user: str,
        *,
        password: str | None = None,
        key_path: str | None = None,
        timeout: float = 30.0,
    ) -> ParamikoConnection:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        kwargs: dict = {
            "hostname": host,
            "port": port,
            "username": user,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "look_for_keys": False,
            "allow_agent": False,
        }
        if password:
            kwargs["password"] = password
        if key_path:
            kwargs["key_filename"] = str(Path(key_path).expanduser())
            if password:
                kwargs["passphrase"] = password

        try:
            client.connect(**kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise TransportError(f"authentication failed for {user}@{host}: {e}") from e
        except (OSError, paramiko.SSHException) as e:
            client.close()
            raise TransportError(f"cannot connect to {host}:{port}: {e}") from e

        logger.info("Connected to %s@%s:%d", user, host, port)
        return ParamikoConnection(client)
