import json
import tempfile
import unittest
from pathlib import Path


class TestLockStore(unittest.TestCase):
    def test_missing_file_reads_empty_without_writing(self) -> None:
        from grouplock.kernel.store import LockStore

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "groupData.json"
            store = LockStore(path, default_nickname="LockBot")
            self.assertEqual(store.load(), {})
            self.assertFalse(path.exists())

            store.ensure_file()
            self.assertEqual(json.loads(path.read_text(encoding="utf-8")), {})
            path.write_text('{"t1": {"nick": "Bot"}}', encoding="utf-8")
            store.ensure_file()
            self.assertEqual(store.load()["t1"].nickname, "Bot")

    def test_reads_legacy_keys_and_round_trips(self) -> None:
        from grouplock.kernel.store import LockStore

        doc = {
            "1001": {
                "enabled": True,
                "nick": "Bot",
                "original": {"42": "Custom"},
                "gclock": True,
                "groupName": "Group A",
                "count": 7,
                "cooldown": False,
                "note": "kept by other tools",
            },
            "1002": {"enabled": False, "nick": "Other"},
        }
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "groupData.json"
            path.write_text(json.dumps(doc), encoding="utf-8")
            store = LockStore(path, default_nickname="LockBot")

            records = store.load()
            rec = records["1001"]
            self.assertTrue(rec.enabled)
            self.assertEqual(rec.nickname, "Bot")
            self.assertEqual(rec.nickname_overrides, {"42": "Custom"})
            self.assertTrue(rec.title_lock_enabled)
            self.assertEqual(rec.locked_title, "Group A")
            self.assertEqual(rec.change_count, 7)
            self.assertEqual(rec.desired_nickname("42"), "Custom")
            self.assertEqual(rec.desired_nickname("43"), "Bot")

            store.save(records)
            first = json.loads(path.read_text(encoding="utf-8"))
            store.save(store.load())
            second = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(first, second)
            self.assertEqual(first["1001"]["nick"], "Bot")
            self.assertEqual(first["1001"]["note"], "kept by other tools")
            self.assertEqual({k: v.to_store() for k, v in store.load().items()}, first)

    def test_empty_nickname_gets_default(self) -> None:
        from grouplock.kernel.store import LockStore

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "groupData.json"
            path.write_text(json.dumps({"1": {"enabled": True, "nick": ""}, "2": {"enabled": True}}), encoding="utf-8")
            records = LockStore(path, default_nickname="LockBot").load()
            self.assertEqual(records["1"].nickname, "LockBot")
            self.assertEqual(records["2"].nickname, "LockBot")

    def test_corrupt_content_raises(self) -> None:
        from grouplock.kernel.errors import CorruptStoreError
        from grouplock.kernel.store import LockStore

        bad = [
            "{not json",
            "[1, 2, 3]",
            json.dumps({"1": "enabled"}),
            json.dumps({"1": {"count": -1}}),
            json.dumps({"1": {"enabled": "maybe"}}),
        ]
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "groupData.json"
            store = LockStore(path, default_nickname="LockBot")
            for text in bad:
                path.write_text(text, encoding="utf-8")
                with self.assertRaises(CorruptStoreError, msg=text):
                    store.load()

    def test_save_is_atomic_replace(self) -> None:
        from grouplock.contracts.v1 import LockRecord
        from grouplock.kernel.store import LockStore

        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "groupData.json"
            store = LockStore(path, default_nickname="LockBot")
            store.save({"1": LockRecord(enabled=True, nickname="Bot")})
            self.assertEqual([p.name for p in Path(td).iterdir()], ["groupData.json"])
            self.assertEqual(json.loads(path.read_text(encoding="utf-8"))["1"]["nick"], "Bot")


if __name__ == "__main__":
    unittest.main()
