import asyncio
import unittest
import pandas as pd

from scheduler import GenerationCounter, ResultSlot, StaleComputation, run_in_chunks


class TestGenerationCounter(unittest.TestCase):

    def test_tokens_increase(self):
        counter = GenerationCounter()
        first = counter.advance()
        second = counter.advance()
        self.assertLess(first, second)
        self.assertTrue(counter.is_current(second))
        self.assertFalse(counter.is_current(first))

    def test_ensure_current_raises_for_stale_token(self):
        counter = GenerationCounter()
        token = counter.advance()
        counter.advance()
        with self.assertRaises(StaleComputation) as ctx:
            counter.ensure_current(token)
        self.assertEqual(ctx.exception.token, token)

    def test_result_slot_only_accepts_current(self):
        counter = GenerationCounter()
        slot = ResultSlot("initial")
        old = counter.advance()
        new = counter.advance()
        self.assertFalse(slot.publish(counter, old, "old"))
        self.assertEqual(slot.value, "initial")
        self.assertTrue(slot.publish(counter, new, "new"))
        self.assertEqual(slot.value, "new")


class TestRunInChunks(unittest.IsolatedAsyncioTestCase):

    async def test_processes_every_slice(self):
        counter = GenerationCounter()
        token = counter.advance()
        sizes = []
        await run_in_chunks(list(range(25)), 10, lambda c: sizes.append(len(c)), counter, token)
        self.assertEqual(sizes, [10, 10, 5])

    async def test_slices_dataframes_by_position(self):
        counter = GenerationCounter()
        token = counter.advance()
        frame = pd.DataFrame({"x": range(7)}, index=range(100, 107))
        seen = []
        await run_in_chunks(frame, 3, lambda c: seen.extend(c["x"].tolist()), counter, token)
        self.assertEqual(seen, list(range(7)))

    async def test_yields_between_slices(self):
        counter = GenerationCounter()
        token = counter.advance()
        events = []

        async def other():
            events.append("other")

        task = asyncio.create_task(other())
        await run_in_chunks([1, 2, 3], 1, lambda c: events.append(c[0]), counter, token)
        await task
        self.assertLess(events.index("other"), events.index(3),
                        "Other task never ran between slices")

    async def test_superseded_run_stops_at_boundary(self):
        counter = GenerationCounter()
        token = counter.advance()
        processed = []

        def handler(chunk):
            processed.extend(chunk)
            if len(processed) == 2:
                counter.advance()  # a newer run starts

        with self.assertRaises(StaleComputation):
            await run_in_chunks(list(range(10)), 2, handler, counter, token)
        self.assertEqual(processed, [0, 1], "Work continued after being superseded")

    async def test_rejects_bad_chunk_size(self):
        counter = GenerationCounter()
        with self.assertRaises(ValueError):
            await run_in_chunks([1], 0, lambda c: None, counter, counter.advance())


if __name__ == "__main__":
    unittest.main()
