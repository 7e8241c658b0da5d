import itertools
import json
import time
import unittest
from pathlib import Path


class _Harness:
    def __init__(self, fallback=None, **overrides) -> None:
        from ptybus.kernel.agents import CAPABILITIES, AgentKind
        from ptybus.kernel.settings import PtySettings
        from ptybus.runners.controller import PtySessionController
        from ptybus.runners.turns import TurnProtocolEngine

        from ptybus_fakes import FakeSpawner, ManualLoop

        self.loop = ManualLoop()
        self.spawner = FakeSpawner()
        self.sent = []
        counter = itertools.count(1)
        settings = PtySettings(**overrides)
        self.controller = PtySessionController(
            self.loop,
            command="codex",
            args=[],
            cwd=Path("."),
            env={},
            capabilities=CAPABILITIES[AgentKind.CODEX],
            settings=settings,
            spawner=self.spawner,
            subscriber="codex:worker",
        )
        self.engine = TurnProtocolEngine(
            self.loop,
            self.controller,
            reply_sink=lambda target, message: self.sent.append((target, json.loads(message))),
            settings=settings,
            fallback=fallback,
            marker_factory=lambda: f"__MK{next(counter)}__",
        )

    def ready(self) -> "_Harness":
        self.controller.start()
        self.loop.advance(self.controller.settings.quiet_window)
        return self

    @property
    def proc(self):
        return self.spawner.last

    def deltas(self, target: str = "codex:pub") -> str:
        return "".join(m["delta"] for t, m in self.sent if t == target and "delta" in m)

    def dones(self, target: str = "codex:pub") -> list:
        return [m for t, m in self.sent if t == target and m.get("done")]


class _EchoFallback:
    def __init__(self) -> None:
        self.prompts = []

    def run(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return f"headless: {prompt}"


class TestTurnProtocol(unittest.TestCase):
    def test_echo_is_suppressed_and_second_marker_completes(self) -> None:
        h = _Harness().ready()
        h.engine.submit("codex:pub", "do the thing")
        typed = h.proc.typed().decode()
        self.assertIn("do the thing", typed)
        self.assertIn("__MK1__", typed)

        h.proc.emit("do the thing ... print the marker\n__MK1__\n\n\nreal reply__MK1__\n")

        self.assertEqual(h.deltas(), "real reply")
        self.assertEqual(h.dones(), [{"stream": True, "done": True, "reason": "marker"}])
        self.assertFalse(h.engine.busy)

    def test_marker_split_across_chunks_is_never_leaked(self) -> None:
        h = _Harness().ready()
        h.engine.submit("codex:pub", "q")
        h.proc.emit("echo __MK1__\n")
        h.proc.emit("answer part one\n__M")
        h.loop.advance(0.2)
        self.assertEqual(h.deltas(), "answer part one\n")

        h.proc.emit("K1__\n")
        self.assertEqual(h.deltas(), "answer part one\n")
        self.assertEqual([d["reason"] for d in h.dones()], ["marker"])

    def test_streaming_flushes_in_bounded_chunks(self) -> None:
        h = _Harness(chunk_size=10).ready()
        h.engine.submit("codex:pub", "q")
        h.proc.emit("__MK1__\n" + "x" * 25 + "\n")
        h.loop.advance(1.0)
        chunks = [m["delta"] for _, m in h.sent if "delta" in m]
        self.assertEqual([len(c) for c in chunks], [10, 10, 6])
        self.assertEqual(h.dones(), [])

    def test_echo_timeout_leaves_suppression(self) -> None:
        h = _Harness().ready()
        h.engine.submit("codex:pub", "q")
        h.proc.emit("no echo here\n")
        h.loop.advance(0.5)
        self.assertEqual(h.deltas(), "")

        h.loop.advance(1.5)
        h.proc.emit("reply __MK1__\n")
        self.assertEqual(h.deltas(), "no echo here\nreply ")
        self.assertEqual([d["reason"] for d in h.dones()], ["marker"])

    def test_watchdog_timeout_replies_exactly_once(self) -> None:
        from ptybus.runners.controller import SessionState

        h = _Harness().ready()
        h.engine.submit("codex:pub", "never answered")
        h.loop.advance(119.0)
        self.assertEqual(h.dones(), [])

        h.loop.advance(1.0)
        dones = h.dones()
        self.assertEqual(len(dones), 1)
        self.assertEqual(dones[0]["reason"], "timeout")
        self.assertEqual(len(h.spawner.procs), 2)
        self.assertTrue(h.spawner.procs[0].killed)

        h.loop.advance(600.0)
        self.assertEqual(len(h.dones()), 1)
        self.assertIs(h.controller.state, SessionState.READY_IDLE)

    def test_idle_timeout_ends_turn_with_buffered_output(self) -> None:
        h = _Harness().ready()
        h.engine.submit("codex:pub", "q")
        h.proc.emit("__MK1__\npartial answer")
        h.loop.advance(29.0)
        h.proc.emit(" more")
        h.loop.advance(29.9)
        self.assertEqual(h.dones(), [])
        h.loop.advance(0.2)
        self.assertEqual(h.deltas(), "partial answer more")
        self.assertEqual([d["reason"] for d in h.dones()], ["idle"])

    def test_turns_run_one_at_a_time_in_order(self) -> None:
        h = _Harness().ready()
        h.engine.submit("codex:a", "first")
        h.engine.submit("codex:b", "second")
        self.assertEqual(len(h.engine.queue), 1)
        self.assertNotIn("second", h.proc.typed().decode())

        h.proc.emit("__MK1__\none__MK1__\n")
        self.assertEqual(h.deltas("codex:a"), "one")
        self.assertIn("second", h.proc.typed().decode())
        h.proc.emit("__MK2__\ntwo__MK2__\n")
        self.assertEqual(h.deltas("codex:b"), "two")

    def test_full_queue_drops_oldest(self) -> None:
        h = _Harness(queue_limit=2)
        h.controller.start()
        for text in ("one", "two", "three"):
            h.engine.submit("codex:pub", text)
        self.assertEqual([t.text for t in h.engine.queue], ["two", "three"])
        self.assertEqual(h.engine.dropped, 1)

    def test_queued_turn_waits_for_warmup(self) -> None:
        h = _Harness()
        h.controller.start()
        h.engine.submit("codex:pub", "early")
        self.assertIsNone(h.engine.current)
        h.loop.advance(3.0)
        self.assertIsNotNone(h.engine.current)
        self.assertIn("early", h.proc.typed().decode())

    def test_raw_turn_writes_verbatim_and_ends_on_idle(self) -> None:
        h = _Harness().ready()
        h.engine.submit("codex:pub", json.dumps({"raw": True, "data": "y"}))
        self.assertEqual(h.proc.writes, [b"y"])
        h.proc.emit("ok\n")
        h.loop.advance(0.2)
        self.assertEqual(h.deltas(), "ok\n")
        h.loop.advance(30.0)
        self.assertEqual([d["reason"] for d in h.dones()], ["idle"])

    def test_crash_mid_turn_reports_exit(self) -> None:
        h = _Harness().ready()
        h.engine.submit("codex:pub", "q")
        h.engine.submit("codex:pub", "next")
        h.proc.exit(1)
        self.assertEqual([d["reason"] for d in h.dones()], ["exit"])

        h.loop.advance(1.0 + 3.0)
        self.assertEqual(len(h.spawner.procs), 2)
        self.assertIn("next", h.proc.typed().decode())

    def test_fallback_after_restart_exhaustion(self) -> None:
        fb = _EchoFallback()
        h = _Harness(fallback=fb).ready()
        for _ in range(4):
            h.proc.exit(1)
            h.loop.advance(10.0)
        h.engine.submit("codex:pub", "hello")

        for _ in range(200):
            if h.loop._ready:
                break
            time.sleep(0.01)
        h.loop.run_ready()
        self.assertEqual(fb.prompts, ["hello"])
        self.assertEqual(h.deltas(), "headless: hello")
        self.assertEqual([d["reason"] for d in h.dones()], ["fallback"])

    def test_watchdog_fallback_action_without_runner(self) -> None:
        from ptybus.runners.controller import SessionState

        h = _Harness(watchdog_action="fallback").ready()
        h.engine.submit("codex:pub", "stuck")
        h.engine.submit("codex:pub", "queued")
        h.loop.advance(120.0)
        self.assertIs(h.controller.state, SessionState.FALLBACK)
        self.assertEqual([d["reason"] for d in h.dones()], ["timeout", "fallback"])
        self.assertEqual(h.dones()[1]["detail"], "no fallback runner configured")

    def test_reply_delivery_failure_is_contained(self) -> None:
        from ptybus.errors import TargetNotFound

        h = _Harness().ready()

        def _sink(target, message):
            raise TargetNotFound(target)

        h.engine._reply_sink = _sink
        h.engine.submit("nobody", "q")
        h.proc.emit("__MK1__\nanswer__MK1__")
        self.assertFalse(h.engine.busy)

    def test_failed_done_write_still_frees_the_session(self) -> None:
        from ptybus.runners.controller import SessionState

        h = _Harness().ready()
        record = h.engine._reply_sink

        def _sink(target, message):
            if '"done"' in message:
                raise OSError(28, "No space left on device")
            record(target, message)

        h.engine._reply_sink = _sink
        h.engine.submit("codex:pub", "first")
        h.engine.submit("codex:pub", "second")
        h.proc.emit("__MK1__\nanswer__MK1__")

        self.assertEqual(h.deltas(), "answer")
        self.assertEqual(h.controller.state, SessionState.BUSY)
        self.assertEqual(h.engine.current.text, "second")
        self.assertEqual(h.engine.current.marker, "__MK2__")

        h.engine._reply_sink = record
        h.proc.emit("__MK2__\nagain__MK2__")
        self.assertEqual([d["reason"] for d in h.dones()], ["marker"])
        self.assertEqual(h.controller.state, SessionState.READY_IDLE)
        self.assertFalse(h.engine.busy)

    def test_marker_redrawn_after_carriage_return_ends_turn(self) -> None:
        h = _Harness().ready()
        h.engine.submit("codex:pub", "q1")
        h.proc.emit("__MK1__\nanswer\n\r__MK1__")
        self.assertEqual(h.deltas(), "answer\n")
        self.assertEqual([d["reason"] for d in h.dones()], ["marker"])
        self.assertFalse(h.engine.busy)

        h.engine.submit("codex:pub", "q2")
        h.proc.emit("__MK2__\nmore\n")
        h.proc.emit("\r__MK2__")
        self.assertEqual(h.deltas(), "answer\nmore\n")
        self.assertEqual([d["reason"] for d in h.dones()], ["marker", "marker"])


if __name__ == "__main__":
    unittest.main()
