"""First-instance-wins rendezvous over a per-user Unix domain socket.

A launch first calls `probe_and_forward()`. If a daemon answers, the path is
written to it as one UTF-8 message and the launch exits. Otherwise the launch
becomes the daemon and runs an `InstanceServer` for the rest of its life.
There is no framing and no reply: the sender writes once and closes, and the
server reads until EOF (bounded by `MAX_MESSAGE_BYTES`).
"""

from __future__ import annotations

import errno
import logging
import os
import socket
import threading
from collections.abc import Callable
from pathlib import Path

from .config import user_cache_dir, user_runtime_dir
from .document import validate_request_path
from .errors import EndpointBusyError, MdGlanceError

logger = logging.getLogger(__name__)

SOCKET_FILE_NAME = "mdglance.sock"
MAX_MESSAGE_BYTES = 4096
CONNECT_TIMEOUT_SECONDS = 1.0
READ_TIMEOUT_SECONDS = 2.0
ACCEPT_RETRY_DELAY_SECONDS = 0.1
LISTEN_BACKLOG = 16


def socket_path() -> Path:
    """Well-known endpoint; runtime dir first, cache dir as the fallback."""
    base = user_runtime_dir()
    if base is None:
        base = user_cache_dir()
    return base / SOCKET_FILE_NAME


def _connect(endpoint: Path, timeout: float) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(str(endpoint))
    except OSError:
        sock.close()
        raise
    return sock


def probe_and_forward(
    path: str | Path | None,
    *,
    endpoint: Path | None = None,
    timeout: float = CONNECT_TIMEOUT_SECONDS,
) -> bool:
    """Hand `path` to a running daemon.

    Returns False when nothing is listening (missing, refused or stale
    endpoint); that is the normal signal to become the daemon. `path=None`
    sends an empty message, which only asks the daemon to show its window.
    """
    endpoint = endpoint if endpoint is not None else socket_path()
    payload = b""
    if path is not None:
        payload = str(Path(path).expanduser().resolve()).encode("utf-8")
    if len(payload) > MAX_MESSAGE_BYTES:
        logger.warning("Path too long to forward (%d bytes)", len(payload))
        return False

    try:
        sock = _connect(endpoint, timeout)
    except OSError as exc:
        logger.debug("No daemon at %s: %s", endpoint, exc)
        return False
    try:
        if payload:
            sock.sendall(payload)
        sock.shutdown(socket.SHUT_WR)
    except OSError as exc:
        logger.debug("Daemon at %s went away mid-send: %s", endpoint, exc)
        return False
    finally:
        sock.close()
    return True


def _endpoint_is_live(endpoint: Path) -> bool:
    try:
        probe = _connect(endpoint, CONNECT_TIMEOUT_SECONDS)
    except OSError:
        return False
    probe.close()
    return True


class InstanceServer:
    """Accept forwarded open requests for the lifetime of the daemon."""

    def __init__(
        self,
        on_file_request: Callable[[Path], object],
        *,
        endpoint: Path | None = None,
        on_activate: Callable[[], object] | None = None,
        read_timeout: float = READ_TIMEOUT_SECONDS,
        accept_retry_delay: float = ACCEPT_RETRY_DELAY_SECONDS,
    ):
        self.endpoint = endpoint if endpoint is not None else socket_path()
        self.on_file_request = on_file_request
        self.on_activate = on_activate
        self.read_timeout = read_timeout
        self.accept_retry_delay = accept_retry_delay
        self._sock: socket.socket | None = None
        self._closed = threading.Event()
        self._thread: threading.Thread | None = None

    def bind(self) -> None:
        """Claim the endpoint, clearing a stale socket file left by a dead daemon."""
        self.endpoint.parent.mkdir(parents=True, exist_ok=True)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            try:
                sock.bind(str(self.endpoint))
            except OSError as exc:
                if exc.errno != errno.EADDRINUSE:
                    raise
                if _endpoint_is_live(self.endpoint):
                    raise EndpointBusyError(
                        f"Another instance is already listening on {self.endpoint}",
                        self.endpoint,
                    ) from exc
                logger.info("Removing stale endpoint %s", self.endpoint)
                self.endpoint.unlink(missing_ok=True)
                sock.bind(str(self.endpoint))
            os.chmod(self.endpoint, 0o600)
            sock.listen(LISTEN_BACKLOG)
        except BaseException:
            sock.close()
            raise
        self._sock = sock
        logger.info("Listening on %s", self.endpoint)

    def start(self) -> None:
        if self._sock is None:
            self.bind()
        self._thread = threading.Thread(target=self.serve_forever, name="mdglance-rendezvous", daemon=True)
        self._thread.start()

    def serve_forever(self) -> None:
        if self._sock is None:
            self.bind()
        listener = self._sock
        while not self._closed.is_set():
            try:
                conn, _ = listener.accept()
            except OSError:
                if self._closed.is_set():
                    return
                logger.exception("Accept failed on %s", self.endpoint)
                # Persistent failures (EMFILE) would otherwise spin; close() cuts the wait short.
                self._closed.wait(self.accept_retry_delay)
                continue
            handler = threading.Thread(
                target=self._handle_connection,
                args=(conn,),
                name="mdglance-request",
                daemon=True,
            )
            handler.start()

    def close(self) -> None:
        """Stop accepting and remove the endpoint (tests and shutdown only)."""
        self._closed.set()
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._sock.close()
            self._sock = None
        if self._thread is not None:
            self._thread.join(2.0)
        self.endpoint.unlink(missing_ok=True)

    def _read_message(self, conn: socket.socket) -> bytes:
        conn.settimeout(self.read_timeout)
        chunks: list[bytes] = []
        received = 0
        while received < MAX_MESSAGE_BYTES:
            chunk = conn.recv(MAX_MESSAGE_BYTES - received)
            if not chunk:
                break
            chunks.append(chunk)
            received += len(chunk)
        return b"".join(chunks)

    def _handle_connection(self, conn: socket.socket) -> None:
        try:
            with conn:
                raw = self._read_message(conn)
            self.handle_message(raw)
        except Exception:
            # One bad sender must never take the daemon down.
            logger.exception("Dropped request on %s", self.endpoint)

    def handle_message(self, raw: bytes) -> Path | None:
        """Validate one message and dispatch it; returns the opened path."""
        try:
            text = raw.decode("utf-8").strip()
        except UnicodeDecodeError:
            logger.warning("Dropped request: message is not valid UTF-8")
            return None

        if not text:
            if self.on_activate is not None:
                self.on_activate()
            return None

        try:
            path = validate_request_path(text)
        except MdGlanceError as exc:
            logger.warning("Dropped request: %s", exc)
            return None

        try:
            self.on_file_request(path)
        except MdGlanceError as exc:
            logger.warning("Could not open %s: %s", path, exc)
            return None
        return path
