from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Dict, Optional

from ..contracts.v1 import PtySocketRequest, response
from ..errors import SocketProtocolError
from ..runners.controller import PtySessionController
from ..runners.distributor import OutputDistributor

logger = logging.getLogger("ptybus.socket")

_MAX_LINE_BYTES = 2_000_000


def _is_socket_alive(sock_path: Path) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(0.2)
            s.connect(str(sock_path))
            return True
    except Exception:
        return False


def _remove_stale_socket(sock_path: Path) -> None:
    try:
        if sock_path.exists() and not _is_socket_alive(sock_path):
            sock_path.unlink()
    except Exception:
        pass


def _send_json(conn: socket.socket, obj: Dict[str, Any]) -> None:
    data = (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")
    conn.sendall(data)


def parse_request(line: bytes) -> PtySocketRequest:
    try:
        raw = json.loads(line.decode("utf-8", errors="replace"))
        return PtySocketRequest.model_validate(raw)
    except ValueError as e:
        raise SocketProtocolError(f"invalid request: {e}") from e


@dataclass
class _Client:
    conn: socket.socket
    buf: bytearray = field(default_factory=bytearray)
    observer_id: Optional[int] = None
    closed: bool = False


class ControlServer:
    """Per-session control socket, served on the session's own loop.

    Requests and responses are newline-delimited JSON. A malformed request
    gets an ``error`` response and the connection stays open.
    """

    def __init__(
        self,
        loop: Any,
        sock_path: Path,
        *,
        controller: PtySessionController,
        distributor: OutputDistributor,
        send_timeout: float = 1.0,
    ) -> None:
        self.loop = loop
        self.sock_path = sock_path
        self.controller = controller
        self.distributor = distributor
        self.send_timeout = float(send_timeout)
        self._listener: Optional[socket.socket] = None
        self._clients: Dict[int, _Client] = {}

    def start(self) -> None:
        self.sock_path.parent.mkdir(parents=True, exist_ok=True)
        _remove_stale_socket(self.sock_path)
        if self.sock_path.exists():
            raise RuntimeError(f"control socket already in use: {self.sock_path}")
        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        s.bind(str(self.sock_path))
        s.listen(16)
        s.setblocking(False)
        self._listener = s
        self.loop.add_reader(s.fileno(), self._on_accept)
        logger.info(f"control socket listening on {self.sock_path}", extra={"subscriber": self.controller.subscriber})

    def close(self) -> None:
        for client in list(self._clients.values()):
            self._drop(client)
        s, self._listener = self._listener, None
        if s is not None:
            self.loop.remove_reader(s.fileno())
            try:
                s.close()
            except OSError:
                pass
            try:
                self.sock_path.unlink()
            except OSError:
                pass

    def client_count(self) -> int:
        return len(self._clients)

    def _on_accept(self) -> None:
        if self._listener is None:
            return
        try:
            conn, _ = self._listener.accept()
        except (BlockingIOError, InterruptedError):
            return
        conn.settimeout(self.send_timeout)
        client = _Client(conn=conn)
        self._clients[conn.fileno()] = client
        self.loop.add_reader(conn.fileno(), partial(self._on_readable, client))

    def _drop(self, client: _Client) -> None:
        if client.closed:
            return
        client.closed = True
        if client.observer_id is not None:
            self.distributor.unsubscribe(client.observer_id)
        try:
            fd = client.conn.fileno()
        except OSError:
            fd = -1
        if fd >= 0:
            self.loop.remove_reader(fd)
            self._clients.pop(fd, None)
        try:
            client.conn.close()
        except OSError:
            pass

    def _on_readable(self, client: _Client) -> None:
        try:
            data = client.conn.recv(65536)
        except (BlockingIOError, socket.timeout):
            return
        except OSError:
            self._drop(client)
            return
        if not data:
            self._drop(client)
            return
        client.buf.extend(data)
        while not client.closed:
            idx = client.buf.find(b"\n")
            if idx < 0:
                break
            line = bytes(client.buf[:idx])
            del client.buf[: idx + 1]
            if line.strip():
                self._serve(client, line)
        if len(client.buf) > _MAX_LINE_BYTES:
            client.buf.clear()
            self._reply(client, response("error", message="request too large"))

    def _reply(self, client: _Client, obj: Dict[str, Any]) -> None:
        try:
            _send_json(client.conn, obj)
        except OSError:
            self._drop(client)

    def _serve(self, client: _Client, line: bytes) -> None:
        try:
            req = parse_request(line)
        except SocketProtocolError as e:
            logger.info(str(e), extra={"subscriber": self.controller.subscriber})
            self._reply(client, response("error", message=str(e)))
            return

        if req.type == "inject":
            if not self.controller.inject(req.data):
                self._reply(client, response("error", message="session not running"))
        elif req.type == "raw":
            if not self.controller.write(req.data):
                self._reply(client, response("error", message="session not running"))
        elif req.type == "resize":
            self.controller.resize(req.cols, req.rows)
            self.distributor.resize(req.cols, req.rows)
        elif req.type == "subscribe":
            if client.observer_id is not None:
                self.distributor.unsubscribe(client.observer_id)
                client.observer_id = None
            self._reply(client, response("subscribed", mode=req.mode))
            if not client.closed:
                client.observer_id = self.distributor.subscribe(partial(self._observe, client), req.mode)

    def _observe(self, client: _Client, kind: str, data: str) -> None:
        if client.closed:
            raise OSError("client closed")
        try:
            _send_json(client.conn, response(kind, data=data))
        except OSError:
            # The distributor unsubscribes on raise; also drop the connection.
            client.observer_id = None
            self._drop(client)
            raise
