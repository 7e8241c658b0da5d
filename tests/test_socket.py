import json
import socket
import tempfile
import unittest
from pathlib import Path


class TestParseRequest(unittest.TestCase):
    def test_valid_requests(self) -> None:
        from ptybus.daemon.server import parse_request

        req = parse_request(b'{"type": "subscribe", "mode": "screen"}')
        self.assertEqual((req.type, req.mode), ("subscribe", "screen"))
        req = parse_request(b'{"type": "resize", "cols": 120, "rows": 40}')
        self.assertEqual((req.cols, req.rows), (120, 40))
        self.assertEqual(parse_request(b'{"type": "subscribe"}').mode, "full")

    def test_invalid_requests(self) -> None:
        from ptybus.daemon.server import parse_request
        from ptybus.errors import SocketProtocolError

        for line in (
            b"not json",
            b"[1, 2]",
            b'{"type": "explode"}',
            b'{"type": "inject"}',
            b'{"type": "resize", "cols": 0, "rows": 10}',
            b'{"type": "raw", "data": "x", "extra": 1}',
            b'{"type": "subscribe", "mode": "everything"}',
        ):
            with self.assertRaises(SocketProtocolError, msg=line):
                parse_request(line)


class TestControlServer(unittest.TestCase):
    def _server(self, td: str, *, started: bool = True):
        from ptybus.daemon.server import ControlServer
        from ptybus.kernel.agents import CAPABILITIES, AgentKind
        from ptybus.runners.controller import PtySessionController
        from ptybus.runners.distributor import OutputDistributor

        from ptybus_fakes import FakeSpawner, ManualLoop

        loop = ManualLoop()
        spawner = FakeSpawner()
        controller = PtySessionController(
            loop,
            command="codex",
            args=[],
            cwd=Path(td),
            env={},
            capabilities=CAPABILITIES[AgentKind.CODEX],
            spawner=spawner,
            subscriber="codex:s1",
        )
        distributor = OutputDistributor()
        controller.output_taps.append(distributor.feed)
        if started:
            controller.start()
        server = ControlServer(loop, Path(td) / "s1.sock", controller=controller, distributor=distributor)
        server.start()
        self.addCleanup(server.close)
        return loop, spawner, distributor, server

    def _connect(self, loop, server):
        client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        client.settimeout(2.0)
        client.connect(str(server.sock_path))
        self.addCleanup(client.close)
        before = set(loop.readers)
        loop.readers[server._listener.fileno()]()
        (fd,) = set(loop.readers) - before
        return client, client.makefile("rb"), fd

    def _send(self, loop, client, fd, obj) -> None:
        line = obj if isinstance(obj, bytes) else json.dumps(obj).encode("utf-8") + b"\n"
        client.sendall(line)
        loop.readers[fd]()

    def test_malformed_request_keeps_connection_open(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            loop, spawner, _, server = self._server(td)
            client, reader, fd = self._connect(loop, server)

            self._send(loop, client, fd, b"{bad\n")
            err = json.loads(reader.readline())
            self.assertEqual(err["type"], "error")

            self._send(loop, client, fd, {"type": "resize", "cols": 100, "rows": 30})
            self.assertEqual((spawner.last.cols, spawner.last.rows), (100, 30))
            self.assertEqual(server.client_count(), 1)

    def test_inject_and_raw_reach_the_process(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            loop, spawner, _, server = self._server(td)
            client, _, fd = self._connect(loop, server)
            self._send(loop, client, fd, {"type": "raw", "data": "y"})
            self._send(loop, client, fd, {"type": "inject", "data": "hello"})
            self.assertEqual(spawner.last.writes, [b"y", b"hello"])
            loop.advance(1.0)
            self.assertEqual(spawner.last.writes[2:], [b"\x1b", b"\r"])

    def test_inject_without_session_reports_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            loop, _, _, server = self._server(td, started=False)
            client, reader, fd = self._connect(loop, server)
            self._send(loop, client, fd, {"type": "inject", "data": "hello"})
            self.assertEqual(json.loads(reader.readline()), {"type": "error", "message": "session not running"})

    def test_subscribe_backfills_then_streams(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            loop, _, distributor, server = self._server(td)
            distributor.feed(b"earlier\r\n")
            client, reader, fd = self._connect(loop, server)
            self._send(loop, client, fd, {"type": "subscribe"})
            self.assertEqual(json.loads(reader.readline()), {"type": "subscribed", "mode": "full"})
            self.assertEqual(json.loads(reader.readline()), {"type": "replay", "data": "earlier\r\n"})

            distributor.feed(b"live")
            self.assertEqual(json.loads(reader.readline()), {"type": "output", "data": "live"})

    def test_disconnect_unsubscribes(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            loop, _, distributor, server = self._server(td)
            client, reader, fd = self._connect(loop, server)
            self._send(loop, client, fd, {"type": "subscribe", "mode": "screen"})
            reader.readline()
            self.assertEqual(distributor.observer_count(), 1)

            reader.close()
            client.close()
            loop.readers[fd]()
            self.assertEqual(distributor.observer_count(), 0)
            self.assertEqual(server.client_count(), 0)

    def test_stale_socket_file_is_replaced(self) -> None:
        from ptybus.daemon.server import _is_socket_alive

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "s1.sock"
            path.write_text("", encoding="utf-8")
            self.assertFalse(_is_socket_alive(path))
            _, _, _, server = self._server(td)
            self.assertTrue(_is_socket_alive(server.sock_path))


if __name__ == "__main__":
    unittest.main()
