import os
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path


class TestSessionLoop(unittest.TestCase):
    def test_timers_fire_in_order_and_cancel(self) -> None:
        from ptybus.runners.loop import SessionLoop

        loop = SessionLoop()
        self.addCleanup(loop.close)
        fired = []
        loop.call_later(0.02, fired.append, "b")
        loop.call_later(0.0, fired.append, "a")
        loop.call_later(0.01, fired.append, "x").cancel()
        deadline = time.monotonic() + 2.0
        while len(fired) < 2 and time.monotonic() < deadline:
            loop.run_once(timeout=0.05)
        self.assertEqual(fired, ["a", "b"])

    def test_threadsafe_call_wakes_loop(self) -> None:
        from ptybus.runners.loop import SessionLoop

        loop = SessionLoop()
        self.addCleanup(loop.close)
        seen = []

        def _worker() -> None:
            time.sleep(0.05)
            loop.call_soon_threadsafe(seen.append, "hi")
            loop.call_soon_threadsafe(loop.stop)

        threading.Thread(target=_worker, daemon=True).start()
        started = time.monotonic()
        loop.run_forever()
        self.assertEqual(seen, ["hi"])
        self.assertLess(time.monotonic() - started, 1.0)
        self.assertFalse(loop.is_running())

    def test_reader_callbacks_and_failures_are_contained(self) -> None:
        from ptybus.runners.loop import SessionLoop

        loop = SessionLoop()
        self.addCleanup(loop.close)
        r, w = os.pipe()
        self.addCleanup(os.close, r)
        self.addCleanup(os.close, w)
        got = []
        loop.add_reader(r, lambda: got.append(os.read(r, 100)))
        loop.call_soon(lambda: 1 / 0)
        os.write(w, b"ping")
        loop.run_once(timeout=0.5)
        self.assertEqual(got, [b"ping"])
        self.assertTrue(loop.remove_reader(r))
        self.assertFalse(loop.remove_reader(r))


@unittest.skipUnless(sys.platform.startswith(("linux", "darwin")), "needs a POSIX pty")
class TestPtyProcess(unittest.TestCase):
    def test_spawn_reads_output_and_reports_exit(self) -> None:
        from ptybus.runners.loop import SessionLoop
        from ptybus.runners.pty import spawn_pty

        loop = SessionLoop()
        self.addCleanup(loop.close)
        out = bytearray()
        exits = []
        with tempfile.TemporaryDirectory() as td:
            proc = spawn_pty(
                "/bin/sh",
                ["-c", "printf 'cols=%s' \"$(stty size | cut -d' ' -f2)\"; exit 3"],
                cwd=Path(td),
                env={"PTYBUS_TEST": "1"},
                cols=100,
                rows=30,
            )
            self.assertTrue(proc.tty.startswith("/dev/"))
            proc.attach(loop, out.extend, lambda code, sig: exits.append((code, sig)))
            deadline = time.monotonic() + 5.0
            while not exits and time.monotonic() < deadline:
                loop.run_once(timeout=0.1)
        self.assertEqual(exits, [(3, None)])
        self.assertIn(b"cols=100", bytes(out))
        self.assertFalse(proc.is_running())
        self.assertFalse(proc.write(b"late"))

    def test_empty_command_rejected(self) -> None:
        from ptybus.runners.pty import PtyProcess

        with self.assertRaises(ValueError):
            PtyProcess(command=["", "  "], cwd=Path("."), env={})


if __name__ == "__main__":
    unittest.main()
