import json
import random
import tempfile
import unittest
from pathlib import Path
from typing import Any, Dict


def _make_engine(home: str, records: Dict[str, Dict[str, Any]], **overrides: Any):
    from grouplock.daemon.clock import ManualClock
    from grouplock.daemon.engine import ReconciliationEngine
    from grouplock.kernel.pacing import DelayPolicy
    from grouplock.kernel.settings import AgentSettings

    values: Dict[str, Any] = {"target_gap_min_seconds": 0.0, "target_gap_max_seconds": 0.0}
    values.update(overrides)
    settings = AgentSettings(home=Path(home), **values)
    settings.lock_store_path.write_text(json.dumps(records), encoding="utf-8")
    clock = ManualClock()
    engine = ReconciliationEngine(settings, clock=clock, delay=DelayPolicy.from_settings(settings, rng=random.Random(3)))
    engine.load()
    return engine, clock


class TestReconcile(unittest.IsolatedAsyncioTestCase):
    async def test_one_task_for_a_differing_member(self) -> None:
        from grouplock.contracts.v1 import ThreadSnapshot
        from grouplock.ports.remote.memory import InMemoryClient

        with tempfile.TemporaryDirectory() as td:
            engine, _ = _make_engine(td, {"t1": {"enabled": True, "nick": "X"}})
            engine.attach(InMemoryClient(user_id="op"), "op")
            snap = ThreadSnapshot(member_ids=["op", "m1"], nicknames={"op": "X", "m1": "Y"})

            self.assertEqual(engine.reconciler.reconcile("t1", snap), 1)
            self.assertEqual(engine.queues.pending("t1"), 1)
            await engine.stop()

    async def test_nothing_queued_when_nicknames_match(self) -> None:
        from grouplock.contracts.v1 import ThreadSnapshot
        from grouplock.ports.remote.memory import InMemoryClient

        with tempfile.TemporaryDirectory() as td:
            engine, _ = _make_engine(td, {"t1": {"enabled": True, "nick": "X", "original": {"m2": "Z"}}})
            engine.attach(InMemoryClient(user_id="op"), "op")
            snap = ThreadSnapshot(member_ids=["op", "m1", "m2"], nicknames={"op": "X", "m1": "X", "m2": "Z"})

            self.assertEqual(engine.reconciler.reconcile("t1", snap), 0)
            self.assertEqual(engine.queues.pending("t1"), 0)
            self.assertFalse(engine.queues.is_running("t1"))
            await engine.stop()

    async def test_disabled_cooldown_and_duplicate_are_skipped(self) -> None:
        from grouplock.contracts.v1 import ThreadSnapshot
        from grouplock.ports.remote.memory import InMemoryClient

        records = {
            "off": {"enabled": False, "nick": "X"},
            "cool": {"enabled": True, "nick": "X", "count": 50, "cooldown": True},
            "on": {"enabled": True, "nick": "X"},
        }
        with tempfile.TemporaryDirectory() as td:
            engine, _ = _make_engine(td, records)
            engine.attach(InMemoryClient(user_id="op"), "op")
            snap = ThreadSnapshot(member_ids=["m1"], nicknames={"m1": "Y"})

            self.assertEqual(engine.reconciler.reconcile("off", snap), 0)
            self.assertEqual(engine.reconciler.reconcile("cool", snap), 0)
            self.assertEqual(engine.reconciler.reconcile("unknown", snap), 0)
            self.assertEqual(engine.reconciler.reconcile("on", snap), 1)
            # Overlapping pass: the identical correction is already pending.
            self.assertEqual(engine.reconciler.reconcile("on", snap), 0)
            self.assertEqual(engine.queues.pending("on"), 1)
            await engine.stop()

    async def test_operator_first_then_member(self) -> None:
        from grouplock.ports.remote.memory import InMemoryClient

        record = {"enabled": True, "nick": "Bot", "original": {}, "gclock": True, "groupName": "Group A"}
        with tempfile.TemporaryDirectory() as td:
            engine, clock = _make_engine(td, {"t1": record})
            client = InMemoryClient(user_id="op")
            client.add_thread("t1", title="Group A", nicknames={"m1": "Changed", "op": "OldName"}, members=["m1", "op"])
            engine.attach(client, "op")

            info = await client.get_thread_info("t1")
            self.assertEqual(engine.reconciler.reconcile("t1", info.value), 2)
            await clock.advance(30)
            await engine.queues.wait_idle()

            self.assertEqual(
                client.calls_of("change_nickname"),
                [("Bot", "t1", "op"), ("Bot", "t1", "m1")],
            )
            self.assertEqual(engine.records["t1"].change_count, 2)
            on_disk = json.loads(engine.settings.lock_store_path.read_text(encoding="utf-8"))
            self.assertEqual(on_disk["t1"]["count"], 2)
            self.assertEqual(client.threads["t1"].nicknames, {"m1": "Bot", "op": "Bot"})
            await engine.stop()

    async def test_corrections_are_paced_by_delay_policy(self) -> None:
        from grouplock.ports.remote.memory import InMemoryClient

        with tempfile.TemporaryDirectory() as td:
            engine, clock = _make_engine(td, {"t1": {"enabled": True, "nick": "Bot"}})
            client = InMemoryClient(user_id="op")
            client.add_thread("t1", nicknames={"m1": "a", "m2": "b"})
            engine.attach(client, "op")

            engine.reconciler.reconcile("t1", client.threads["t1"].snapshot())
            await clock.advance(1)
            # First change is done; the second waits out the fast-band delay.
            self.assertEqual(len(client.calls_of("change_nickname")), 1)
            await clock.advance(3)
            self.assertEqual(len(client.calls_of("change_nickname")), 1)
            await clock.advance(2.5)
            self.assertEqual(len(client.calls_of("change_nickname")), 2)
            await engine.stop()

    async def test_cooldown_after_limit_and_reset(self) -> None:
        from grouplock.ports.remote.memory import InMemoryClient

        with tempfile.TemporaryDirectory() as td:
            engine, clock = _make_engine(td, {"t1": {"enabled": True, "nick": "Bot"}}, nickname_change_limit=3)
            client = InMemoryClient(user_id="op")
            client.add_thread("t1", nicknames={f"m{i}": "wrong" for i in range(5)})
            engine.attach(client, "op")

            self.assertEqual(engine.reconciler.reconcile("t1", client.threads["t1"].snapshot()), 5)
            await clock.advance(60)

            rec = engine.records["t1"]
            self.assertEqual(len(client.calls_of("change_nickname")), 3)
            self.assertTrue(rec.cooldown_active)
            self.assertEqual(rec.change_count, 3)
            on_disk = json.loads(engine.settings.lock_store_path.read_text(encoding="utf-8"))
            self.assertTrue(on_disk["t1"]["cooldown"])
            self.assertEqual(engine.reconciler.reconcile("t1", client.threads["t1"].snapshot()), 0)

            await clock.advance(200)
            self.assertTrue(rec.cooldown_active)

            await clock.advance(100)
            self.assertFalse(rec.cooldown_active)
            self.assertEqual(rec.change_count, 0)
            on_disk = json.loads(engine.settings.lock_store_path.read_text(encoding="utf-8"))
            self.assertFalse(on_disk["t1"]["cooldown"])
            self.assertEqual(on_disk["t1"]["count"], 0)

            # Corrections resume for the two members that were skipped.
            self.assertEqual(engine.reconciler.reconcile("t1", client.threads["t1"].snapshot()), 2)
            await engine.stop()

    async def test_persisted_cooldown_is_rearmed_on_load(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            engine, clock = _make_engine(td, {"t1": {"enabled": True, "nick": "Bot", "count": 50, "cooldown": True}})
            self.assertEqual(clock.pending_timers, 1)
            await clock.advance(300)
            self.assertFalse(engine.records["t1"].cooldown_active)
            self.assertEqual(engine.records["t1"].change_count, 0)

    async def test_failed_change_is_abandoned(self) -> None:
        from grouplock.ports.remote.memory import InMemoryClient

        with tempfile.TemporaryDirectory() as td:
            engine, clock = _make_engine(td, {"t1": {"enabled": True, "nick": "Bot"}})
            client = InMemoryClient(user_id="op")
            client.add_thread("t1", nicknames={"m1": "a", "m2": "b"})
            client.fail_next("change_nickname", "rate_limited", "too many requests")
            engine.attach(client, "op")

            engine.reconciler.reconcile("t1", client.threads["t1"].snapshot())
            await clock.advance(30)

            self.assertEqual(len(client.calls_of("change_nickname")), 2)
            self.assertEqual(client.threads["t1"].nicknames, {"m1": "a", "m2": "Bot"})
            self.assertEqual(engine.records["t1"].change_count, 1)
            # The failed member is picked up again by the next pass.
            self.assertEqual(engine.reconciler.reconcile("t1", client.threads["t1"].snapshot()), 1)
            await engine.stop()

    async def test_disconnected_change_requests_reconnect(self) -> None:
        from grouplock.ports.remote.memory import InMemoryClient

        with tempfile.TemporaryDirectory() as td:
            engine, clock = _make_engine(td, {"t1": {"enabled": True, "nick": "Bot"}})
            client = InMemoryClient(user_id="op")
            client.add_thread("t1", nicknames={"m1": "a"})
            client.fail_next("change_nickname", "disconnected", "client disconnecting")
            engine.attach(client, "op")

            engine.reconciler.reconcile("t1", client.threads["t1"].snapshot())
            await clock.advance(1)

            reason = await engine.wait_reconnect()
            self.assertIn("client disconnecting", reason)
            await engine.stop()

    async def test_reconcile_all_skips_unreadable_targets(self) -> None:
        from grouplock.kernel.errors import ForceReconnect
        from grouplock.ports.remote.memory import InMemoryClient

        records = {
            "missing": {"enabled": True, "nick": "Bot"},
            "t2": {"enabled": True, "nick": "Bot"},
            "off": {"enabled": False, "nick": "Bot"},
        }
        with tempfile.TemporaryDirectory() as td:
            engine, _ = _make_engine(td, records)
            client = InMemoryClient(user_id="op")
            client.add_thread("t2", nicknames={"m1": "a"})
            client.add_thread("off", nicknames={"m1": "a"})
            engine.attach(client, "op")

            self.assertEqual(await engine.reconciler.reconcile_all(), 1)
            self.assertEqual(client.calls_of("get_thread_info"), [("missing",), ("t2",)])

            client.fail_next("get_thread_info", "disconnected", "not logged in")
            with self.assertRaises(ForceReconnect):
                await engine.reconciler.reconcile_all()
            await engine.stop()

    async def test_nickname_event_enqueues_single_correction(self) -> None:
        from grouplock.contracts.v1 import ThreadEvent
        from grouplock.ports.remote.memory import InMemoryClient

        with tempfile.TemporaryDirectory() as td:
            engine, clock = _make_engine(td, {"t1": {"enabled": True, "nick": "Bot", "original": {"m2": "Boss"}}})
            client = InMemoryClient(user_id="op")
            client.add_thread("t1", nicknames={"m1": "Bot", "m2": "Boss"})
            engine.attach(client, "op")

            await engine.handle_event(ThreadEvent(kind="nickname", thread_id="t1", participant_id="m1", nickname="Bot"))
            self.assertEqual(engine.queues.pending("t1"), 0)

            await engine.handle_event(ThreadEvent(kind="nickname", thread_id="t1", participant_id="m2", nickname="lol"))
            await clock.advance(10)
            self.assertEqual(client.calls_of("change_nickname"), [("Boss", "t1", "m2")])
            await engine.stop()

    async def test_membership_sync_adds_missing_overrides(self) -> None:
        from grouplock.ports.remote.memory import InMemoryClient

        with tempfile.TemporaryDirectory() as td:
            engine, clock = _make_engine(td, {"t1": {"enabled": True, "nick": "Bot", "original": {"m1": "Custom"}}})
            client = InMemoryClient(user_id="op")
            client.add_thread("t1", nicknames={"op": "Bot", "m1": "Custom"}, members=["op", "m1", "m2"])
            engine.attach(client, "op")

            self.assertEqual(await engine.reconciler.sync_membership("t1"), 1)
            self.assertEqual(engine.records["t1"].nickname_overrides, {"m1": "Custom", "m2": "Bot"})
            on_disk = json.loads(engine.settings.lock_store_path.read_text(encoding="utf-8"))
            self.assertEqual(on_disk["t1"]["original"], {"m1": "Custom", "m2": "Bot"})

            await clock.advance(10)
            self.assertEqual(client.calls_of("change_nickname"), [("Bot", "t1", "m2")])
            await engine.stop()


if __name__ == "__main__":
    unittest.main()
