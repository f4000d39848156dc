import asyncio
import unittest


class TestAdmissionLimiter(unittest.IsolatedAsyncioTestCase):
    async def test_admitted_count_never_exceeds_limit(self) -> None:
        from grouplock.daemon.admission import AdmissionLimiter

        lim = AdmissionLimiter(2)
        state = {"active": 0, "max": 0}

        async def worker() -> None:
            async with lim.slot():
                state["active"] += 1
                state["max"] = max(state["max"], state["active"])
                for _ in range(3):
                    await asyncio.sleep(0)
                state["active"] -= 1

        await asyncio.gather(*(worker() for _ in range(10)))
        self.assertEqual(state["max"], 2)
        self.assertEqual(lim.active, 0)
        self.assertEqual(lim.waiting, 0)

    async def test_waiters_are_admitted_in_arrival_order(self) -> None:
        from grouplock.daemon.admission import AdmissionLimiter

        lim = AdmissionLimiter(1)
        order = []

        async def worker(i: int) -> None:
            async with lim.slot():
                order.append(i)
                await asyncio.sleep(0)

        await lim.acquire()
        tasks = []
        for i in range(5):
            tasks.append(asyncio.create_task(worker(i)))
            await asyncio.sleep(0)
        self.assertEqual(lim.waiting, 5)

        lim.release()
        await asyncio.gather(*tasks)
        self.assertEqual(order, [0, 1, 2, 3, 4])
        self.assertEqual(lim.active, 0)

    async def test_release_hands_slot_to_oldest_waiter(self) -> None:
        from grouplock.daemon.admission import AdmissionLimiter

        lim = AdmissionLimiter(1)
        order = []

        async def worker(name: str) -> None:
            async with lim.slot():
                order.append(name)

        await lim.acquire()
        first = asyncio.create_task(worker("waiter"))
        await asyncio.sleep(0)

        lim.release()
        # A newcomer arriving right after the release must not barge ahead.
        newcomer = asyncio.create_task(worker("newcomer"))
        await asyncio.gather(first, newcomer)
        self.assertEqual(order, ["waiter", "newcomer"])

    async def test_cancelled_waiter_leaves_the_line(self) -> None:
        from grouplock.daemon.admission import AdmissionLimiter

        lim = AdmissionLimiter(1)
        await lim.acquire()
        t = asyncio.create_task(lim.acquire())
        await asyncio.sleep(0)
        self.assertEqual(lim.waiting, 1)

        t.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await t
        self.assertEqual(lim.waiting, 0)

        lim.release()
        self.assertEqual(lim.active, 0)

    async def test_waiter_cancelled_after_handoff_passes_slot_on(self) -> None:
        from grouplock.daemon.admission import AdmissionLimiter

        lim = AdmissionLimiter(1)
        await lim.acquire()
        a = asyncio.create_task(lim.acquire())
        await asyncio.sleep(0)
        b = asyncio.create_task(lim.acquire())
        await asyncio.sleep(0)

        lim.release()
        a.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await a
        await b
        self.assertEqual(lim.active, 1)
        self.assertEqual(lim.waiting, 0)
        lim.release()
        self.assertEqual(lim.active, 0)

    async def test_invalid_use(self) -> None:
        from grouplock.daemon.admission import AdmissionLimiter

        with self.assertRaises(ValueError):
            AdmissionLimiter(0)
        lim = AdmissionLimiter(1)
        with self.assertRaises(RuntimeError):
            lim.release()


if __name__ == "__main__":
    unittest.main()
