import unittest
from urllib.parse import quote

import requests

from src.relay_fetch import FetchExhausted, RelayFetcher, relay_url

RELAYS = ("https://relay-a.test/?url=", "https://relay-b.test/?u=", "https://relay-c.test/raw?q=")
TARGET = "https://api.example.test/v2/everything?q=ai"


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code=200, text="ok"):
        self.status_code = status_code
        self.text = text


class ScriptedSession:
    """Answers GETs from a callable and advances the fake clock per call."""

    def __init__(self, clock, answer, cost=0.1):
        self.clock = clock
        self.answer = answer
        self.cost = cost
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append((url, timeout))
        self.clock.now += self.cost if self.cost is not None else timeout
        result = self.answer(url)
        if isinstance(result, Exception):
            raise result
        return result


def make_fetcher(answer, cost=0.1, relays=RELAYS):
    clock = FakeClock()
    session = ScriptedSession(clock, answer, cost=cost)
    fetcher = RelayFetcher(relays=relays, session=session, clock=clock, sleep=clock.sleep)
    return fetcher, session, clock


class RelayFetcherTests(unittest.TestCase):
    def test_direct_success_skips_relays(self):
        fetcher, session, _ = make_fetcher(lambda url: FakeResponse(200, "direct"))
        res = fetcher.fetch(TARGET)
        self.assertEqual(res.text, "direct")
        self.assertEqual(session.calls, [(TARGET, 10.0)])

    def test_falls_back_to_first_working_relay(self):
        def answer(url):
            if url == TARGET:
                return FakeResponse(503)
            if url.startswith(RELAYS[0]):
                return requests.ConnectionError("refused")
            return FakeResponse(200, "relayed")

        fetcher, session, _ = make_fetcher(answer)
        res = fetcher.fetch(TARGET)
        self.assertEqual(res.text, "relayed")
        self.assertEqual([u for u, _ in session.calls], [TARGET, relay_url(RELAYS[0], TARGET), relay_url(RELAYS[1], TARGET)])
        self.assertEqual(session.calls[1][1], 5.0)

    def test_relay_url_encodes_target(self):
        self.assertEqual(relay_url(RELAYS[0], TARGET), RELAYS[0] + quote(TARGET, safe=""))
        self.assertNotIn("?q=ai", relay_url(RELAYS[0], TARGET))

    def test_rate_limit_is_treated_as_failure(self):
        def answer(url):
            return FakeResponse(429) if url == TARGET else FakeResponse(200, "relayed")

        fetcher, _, _ = make_fetcher(answer)
        self.assertEqual(fetcher.fetch(TARGET).text, "relayed")

    def test_deadline_exhausts_after_budget_with_fast_failures(self):
        fetcher, session, clock = make_fetcher(lambda url: FakeResponse(500), cost=0.1)
        with self.assertRaises(FetchExhausted) as ctx:
            fetcher.fetch(TARGET, time_budget=15.0)
        self.assertGreaterEqual(clock.now, 15.0)
        self.assertLess(clock.now, 30.0)
        self.assertGreater(ctx.exception.attempt.round_index, 0)
        self.assertTrue(all(s == 0.5 for s in clock.sleeps))
        # every round walks the full relay list
        relay_calls = len(session.calls) - 1
        self.assertEqual(relay_calls % len(RELAYS), 0)

    def test_deadline_still_runs_one_full_round_when_attempts_are_slow(self):
        fetcher, session, clock = make_fetcher(lambda url: requests.Timeout("slow"), cost=None)
        with self.assertRaises(FetchExhausted) as ctx:
            fetcher.fetch(TARGET, time_budget=15.0)
        # direct (10s) + one round of three relays (5s each)
        self.assertEqual(len(session.calls), 1 + len(RELAYS))
        self.assertEqual(clock.now, 25.0)
        self.assertEqual(ctx.exception.attempt.round_index, 0)
        self.assertIsInstance(ctx.exception.last_error, Exception)

    def test_trickling_responses_can_overrun_budget_past_one_round(self):
        # each attempt outlives its own timeout, as a slow body read does
        fetcher, session, clock = make_fetcher(lambda url: FakeResponse(500), cost=30.0)
        with self.assertRaises(FetchExhausted):
            fetcher.fetch(TARGET, time_budget=15.0)
        self.assertEqual(len(session.calls), 1 + len(RELAYS))
        self.assertGreater(clock.now, 15.0 + len(RELAYS) * 5.0 + 0.5)

    def test_fetch_direct_never_uses_relays(self):
        fetcher, session, _ = make_fetcher(lambda url: FakeResponse(404))
        with self.assertRaises(FetchExhausted):
            fetcher.fetch_direct(TARGET)
        self.assertEqual(len(session.calls), 1)

    def test_no_relays_fails_after_direct_attempt(self):
        fetcher, session, _ = make_fetcher(lambda url: FakeResponse(500), relays=())
        with self.assertRaises(FetchExhausted):
            fetcher.fetch(TARGET)
        self.assertEqual(len(session.calls), 1)


if __name__ == "__main__":
    unittest.main()
