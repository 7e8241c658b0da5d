import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path


class TestEventLog(unittest.TestCase):
    def test_seq_continues_across_date_partitions(self) -> None:
        from ptybus.kernel.eventlog import EventLog
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            paths = BusPaths(home=Path(td)).ensure()
            now = [datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc)]
            log = EventLog(paths, clock=lambda: now[0])

            seqs = [log.publish(kind="message/targeted", event_name="message", publisher="p", target="t").seq for _ in range(3)]
            now[0] = datetime(2026, 3, 2, 0, 1, tzinfo=timezone.utc)
            seqs += [log.publish(kind="message/targeted", event_name="message", publisher="p", target="t").seq for _ in range(2)]

            self.assertEqual(seqs, [1, 2, 3, 4, 5])
            self.assertEqual([p.name for p in log.partitions()], ["2026-03-01.jsonl", "2026-03-02.jsonl"])
            self.assertEqual([ev["seq"] for ev in log.iter_events()], [1, 2, 3, 4, 5])

    def test_unknown_event_kind_is_rejected_without_using_a_seq(self) -> None:
        from pydantic import ValidationError

        from ptybus.kernel.eventlog import EventLog
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            log = EventLog(BusPaths(home=Path(td)).ensure())
            with self.assertRaises(ValidationError):
                log.publish(kind="message/broadcast", event_name="message", publisher="p", target="t")
            event = log.publish(kind="status/agent", event_name="agent_joined", publisher="p", target="t")
            self.assertEqual((event.seq, event.kind), (1, "status/agent"))

    def test_next_seq_defaults_to_one_and_skips_malformed_lines(self) -> None:
        from ptybus.kernel.eventlog import EventLog
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            paths = BusPaths(home=Path(td)).ensure()
            log = EventLog(paths)
            self.assertEqual(log.next_seq(), 1)

            p = paths.events_dir / "2026-01-01.jsonl"
            p.write_text(
                json.dumps({"seq": 7, "target": "x"}) + "\n" + "{not json\n" + json.dumps({"seq": "bad"}) + "\n",
                encoding="utf-8",
            )
            self.assertEqual(log.next_seq(), 8)
            self.assertEqual([ev["seq"] for ev in log.iter_events()], [7])

    def test_older_partition_with_higher_seq_wins(self) -> None:
        from ptybus.kernel.eventlog import EventLog
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            paths = BusPaths(home=Path(td)).ensure()
            (paths.events_dir / "2026-01-01.jsonl").write_text(json.dumps({"seq": 12, "target": "x"}) + "\n", encoding="utf-8")
            (paths.events_dir / "2026-01-02.jsonl").write_text("garbage\n", encoding="utf-8")
            self.assertEqual(EventLog(paths).next_seq(), 13)

    def test_router_send_and_broadcast_are_strictly_sequential(self) -> None:
        from ptybus.kernel.router import MessageRouter
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            router = MessageRouter(BusPaths(home=Path(td)))
            router.join("a1", "codex")
            router.join("b1", "claude-code")

            seqs = [
                router.send("codex:a1", "one", "claude-code:b1").seq,
                router.broadcast("two", "codex:a1").seq,
                router.send("claude-code", "three", "codex:a1").seq,
                router.broadcast("four").seq,
            ]
            self.assertEqual(seqs, [1, 2, 3, 4])


if __name__ == "__main__":
    unittest.main()
