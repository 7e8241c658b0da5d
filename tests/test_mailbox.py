import os
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock


def _event(seq: int, message: str = "m") -> dict:
    return {"seq": seq, "target": "codex:a", "publisher": "p", "data": {"message": message}}


class TestMailbox(unittest.TestCase):
    def test_enqueue_skips_seqs_covered_by_pull_cursor(self) -> None:
        from ptybus.kernel.mailbox import MailboxStore
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            store = MailboxStore(BusPaths(home=Path(td)).ensure())
            store.set_offset("codex:a", 5)

            self.assertFalse(store.enqueue("codex:a", _event(4)))
            self.assertFalse(store.enqueue("codex:a", _event(5)))
            self.assertTrue(store.enqueue("codex:a", _event(6)))
            self.assertEqual([ev["seq"] for ev in store.check("codex:a")], [6])

    def test_ack_is_idempotent(self) -> None:
        from ptybus.kernel.mailbox import MailboxStore
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            store = MailboxStore(BusPaths(home=Path(td)).ensure())
            store.enqueue("codex:a", _event(1))
            store.enqueue("codex:a", _event(2))

            self.assertEqual(store.ack("codex:a"), 2)
            self.assertEqual(store.ack("codex:a"), 0)
            self.assertEqual(store.check("codex:a"), [])

    def test_drain_takes_everything_once(self) -> None:
        from ptybus.kernel.mailbox import MailboxStore
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            paths = BusPaths(home=Path(td)).ensure()
            first = MailboxStore(paths)
            second = MailboxStore(paths)
            for seq in (2, 1, 3):
                first.enqueue("codex:a", _event(seq))

            self.assertEqual([ev["seq"] for ev in first.drain("codex:a")], [1, 2, 3])
            self.assertEqual(second.drain("codex:a"), [])
            self.assertFalse(paths.pending_path("codex:a").exists())
            self.assertEqual(list(paths.queue_dir("codex:a").iterdir()), [])

    def test_concurrent_drainers_never_share_an_event(self) -> None:
        from ptybus.kernel.mailbox import MailboxStore
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            paths = BusPaths(home=Path(td)).ensure()
            producer = MailboxStore(paths)
            rounds, batch = 20, 10
            results: list = [[] for _ in range(4)]

            for r in range(rounds):
                for i in range(batch):
                    producer.enqueue("codex:a", _event(r * batch + i + 1))
                start = threading.Barrier(4)

                def _drainer(idx: int) -> None:
                    store = MailboxStore(paths)
                    start.wait()
                    for _ in range(3):
                        results[idx].extend(ev["seq"] for ev in store.drain("codex:a"))

                threads = [threading.Thread(target=_drainer, args=(i,)) for i in range(4)]
                for t in threads:
                    t.start()
                for t in threads:
                    t.join(10)

            total = rounds * batch
            seen = [seq for r in results for seq in r]
            self.assertEqual(len(seen), len(set(seen)))
            self.assertEqual(sorted(seen), list(range(1, total + 1)))

    def test_abandoned_processing_file_is_recovered(self) -> None:
        from ptybus.kernel.mailbox import MailboxStore
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            paths = BusPaths(home=Path(td)).ensure()
            store = MailboxStore(paths, pid_check=lambda pid: False)
            store.enqueue("codex:a", _event(1, "lost"))
            pending = paths.pending_path("codex:a")
            # A drainer that died between rename and delete.
            os.rename(pending, pending.with_name("pending.jsonl.processing.999999.1.0"))
            store.enqueue("codex:a", _event(2, "new"))

            events = store.drain("codex:a")
            self.assertEqual([ev["data"]["message"] for ev in events], ["lost", "new"])
            self.assertEqual(list(paths.queue_dir("codex:a").iterdir()), [])

    def test_live_drainer_file_is_left_alone(self) -> None:
        from ptybus.kernel.mailbox import MailboxStore
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            paths = BusPaths(home=Path(td)).ensure()
            store = MailboxStore(paths, pid_check=lambda pid: True)
            pending = paths.pending_path("codex:a")
            store.enqueue("codex:a", _event(1))
            os.rename(pending, pending.with_name("pending.jsonl.processing.424242.1.0"))

            self.assertEqual(store.drain("codex:a"), [])
            self.assertEqual(len(list(paths.queue_dir("codex:a").iterdir())), 1)

    def test_read_failure_rolls_back_to_pending(self) -> None:
        from ptybus.kernel.mailbox import MailboxStore
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            paths = BusPaths(home=Path(td)).ensure()
            store = MailboxStore(paths)
            store.enqueue("codex:a", _event(1))

            with mock.patch.object(Path, "read_text", side_effect=OSError("disk error")):
                self.assertEqual(store.drain("codex:a"), [])

            self.assertTrue(paths.pending_path("codex:a").exists())
            self.assertEqual([ev["seq"] for ev in store.drain("codex:a")], [1])

    def test_drain_of_missing_mailbox_is_empty(self) -> None:
        from ptybus.kernel.mailbox import MailboxStore
        from ptybus.paths import BusPaths

        with tempfile.TemporaryDirectory() as td:
            store = MailboxStore(BusPaths(home=Path(td)).ensure())
            self.assertEqual(store.drain("codex:nobody"), [])


if __name__ == "__main__":
    unittest.main()
