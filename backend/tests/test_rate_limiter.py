import asyncio
import unittest

from app.services.rate_limiter import LimiterConfig, RateLimiter, RateLimiterRegistry, backoff_delay, is_retryable
from tests.fakes import FakeClock


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"status {status_code}")
        self.status_code = status_code


def _limiter(clock: FakeClock | None = None, **overrides) -> RateLimiter:
    cfg = dict(name="image", reservoir=10_000, refresh_interval_s=60.0, max_concurrent=100, min_time_s=0.0, max_retries=5)
    cfg.update(overrides)
    clock = clock or FakeClock()
    return RateLimiter(LimiterConfig(**cfg), clock=clock, sleep=clock.sleep)


class TestBackoff(unittest.TestCase):
    def test_doubles_then_caps(self):
        self.assertEqual(backoff_delay(0), 1.0)
        self.assertEqual(backoff_delay(1), 2.0)
        self.assertEqual(backoff_delay(4), 16.0)
        self.assertEqual(backoff_delay(5), 30.0)
        self.assertEqual(backoff_delay(12), 30.0)

    def test_retryable_statuses(self):
        self.assertTrue(is_retryable(_StatusError(429)))
        self.assertTrue(is_retryable(_StatusError(500)))
        self.assertTrue(is_retryable(_StatusError(503)))
        self.assertFalse(is_retryable(_StatusError(400)))
        self.assertFalse(is_retryable(_StatusError(404)))
        self.assertFalse(is_retryable(ValueError("no status")))


class TestRateLimiter(unittest.IsolatedAsyncioTestCase):
    async def test_concurrency_never_exceeds_cap(self):
        limiter = _limiter(max_concurrent=100)
        running = 0
        peak = 0

        async def task():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            for _ in range(3):
                await asyncio.sleep(0)
            running -= 1
            return 1

        results = await asyncio.gather(*(limiter.schedule(task) for _ in range(1000)))

        self.assertEqual(sum(results), 1000)
        self.assertLessEqual(peak, 100)
        self.assertGreater(peak, 1)
        counts = limiter.counts()
        self.assertEqual(counts["done"], 1000)
        self.assertEqual(counts["received"], 1000)
        self.assertEqual(counts["running"], 0)
        self.assertEqual(counts["queued"], 0)

    async def test_retries_transient_errors_with_backoff(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        attempts = 0

        async def task():
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise _StatusError(503)
            return "ok"

        result = await limiter.schedule(task)

        self.assertEqual(result, "ok")
        self.assertEqual(attempts, 3)
        self.assertEqual(clock.sleeps, [1.0, 2.0])
        self.assertEqual(limiter.counts()["failed"], 0)

    async def test_non_retryable_error_propagates_immediately(self):
        clock = FakeClock()
        limiter = _limiter(clock)
        attempts = 0

        async def task():
            nonlocal attempts
            attempts += 1
            raise _StatusError(400)

        with self.assertRaises(_StatusError):
            await limiter.schedule(task)
        self.assertEqual(attempts, 1)
        self.assertEqual(clock.sleeps, [])
        self.assertEqual(limiter.counts()["failed"], 1)

    async def test_exhausted_retries_reraise_last_error(self):
        limiter = _limiter(max_retries=2)
        events: list[str] = []
        for name in ("error", "retry", "dropped", "done"):
            limiter.on(name, lambda event, info: events.append(event))
        attempts = 0

        async def task():
            nonlocal attempts
            attempts += 1
            raise _StatusError(429)

        with self.assertRaises(_StatusError) as ctx:
            await limiter.schedule(task)

        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(attempts, 3)
        self.assertEqual(events.count("retry"), 2)
        self.assertEqual(events.count("dropped"), 1)
        self.assertNotIn("done", events)

    async def test_every_attempt_takes_a_token(self):
        clock = FakeClock()
        limiter = _limiter(clock, reservoir=2, max_retries=3)
        attempts = 0

        async def task():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise _StatusError(500)
            return attempts

        await limiter.schedule(task)
        self.assertEqual(limiter.stats()["tokens"], 0)

    async def test_reservoir_refills_after_interval(self):
        clock = FakeClock()
        limiter = _limiter(clock, reservoir=2, refresh_interval_s=60.0)

        async def task():
            return clock.now

        started = [await limiter.schedule(task) for _ in range(3)]

        self.assertEqual(started[:2], [0.0, 0.0])
        self.assertGreaterEqual(started[2], 60.0)

    async def test_min_time_spaces_starts(self):
        clock = FakeClock()
        limiter = _limiter(clock, min_time_s=0.5)

        async def task():
            return clock.now

        starts = [await limiter.schedule(task) for _ in range(3)]
        self.assertEqual(starts, [0.0, 0.5, 1.0])

    async def test_admission_is_fifo(self):
        limiter = _limiter(max_concurrent=1)
        order: list[int] = []

        def make(i):
            async def task():
                order.append(i)
                await asyncio.sleep(0)
            return task

        await asyncio.gather(*(limiter.schedule(make(i)) for i in range(20)))
        self.assertEqual(order, list(range(20)))

    async def test_listener_failure_does_not_break_schedule(self):
        limiter = _limiter()

        def broken(event, info):
            raise RuntimeError("listener bug")

        limiter.on("done", broken)

        async def task():
            return 42

        self.assertEqual(await limiter.schedule(task), 42)


class TestRegistry(unittest.TestCase):
    def test_stats_per_class(self):
        clock = FakeClock()
        registry = RateLimiterRegistry(
            {
                "image": _limiter(clock, name="image"),
                "poll": _limiter(clock, name="poll"),
            }
        )
        stats = registry.stats()
        self.assertEqual(set(stats), {"image", "poll"})
        self.assertEqual(stats["image"]["type"], "image")
        for key in ("queued", "running", "done", "received", "failed"):
            self.assertEqual(stats["poll"][key], 0)
        with self.assertRaises(KeyError):
            registry.get("audio")


if __name__ == "__main__":
    unittest.main()
