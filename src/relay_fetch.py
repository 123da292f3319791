from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

DEFAULT_RELAYS = (
    "https://api.allorigins.win/raw?url=",
    "https://corsproxy.io/?url=",
    "https://api.codetabs.com/v1/proxy?quest=",
)
DIRECT_TIMEOUT_SEC = 10.0
RELAY_TIMEOUT_SEC = 5.0
ROUND_PAUSE_SEC = 0.5
DEFAULT_TIME_BUDGET_SEC = 15.0
DEFAULT_USER_AGENT = "topic-news-digest/1.0"


class FetchError(Exception):
    pass


class UpstreamRateLimited(FetchError):
    pass


class FetchExhausted(FetchError):
    def __init__(self, target_url: str, attempt: "FetchAttempt | None" = None, last_error: Exception | None = None):
        self.target_url = target_url
        self.attempt = attempt
        self.last_error = last_error
        rounds = attempt.round_index + 1 if attempt else 0
        super().__init__(f"no response for {target_url} after direct attempt and {rounds} relay round(s): {last_error}")


@dataclass
class FetchAttempt:
    deadline: float
    relay_index: int = 0
    round_index: int = 0


def relay_url(prefix: str, target_url: str) -> str:
    return prefix + quote(target_url, safe="")


class RelayFetcher:
    """GET with a direct attempt first, then relay rounds until the time budget runs out.

    A call always makes the direct attempt and at least one full relay round,
    so ``FetchExhausted`` is raised no earlier than the budget allows. Any
    non-2xx status, network error or timeout counts as a failed attempt.

    The timeouts are handed to ``requests``, which applies them to each
    connect and socket read, not to the whole response. A server that keeps
    trickling bytes can hold one attempt past its timeout, so the budget can
    be overrun by more than a round in that case.

    A ``requests.Session`` is not thread-safe; use one fetcher per thread.
    """

    def __init__(
        self,
        relays: tuple[str, ...] | list[str] = DEFAULT_RELAYS,
        direct_timeout: float = DIRECT_TIMEOUT_SEC,
        relay_timeout: float = RELAY_TIMEOUT_SEC,
        round_pause: float = ROUND_PAUSE_SEC,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.relays = list(relays)
        self.direct_timeout = direct_timeout
        self.relay_timeout = relay_timeout
        self.round_pause = round_pause
        self.headers = {"User-Agent": user_agent}
        self.session = session if session is not None else requests.Session()
        self._clock = clock
        self._sleep = sleep

    def fetch(self, target_url: str, time_budget: float = DEFAULT_TIME_BUDGET_SEC) -> requests.Response:
        started = self._clock()
        state = FetchAttempt(deadline=started + time_budget)
        try:
            return self._attempt(target_url, self.direct_timeout)
        except FetchError as exc:
            last_error: Exception = exc
            logger.debug("[fetch] direct attempt failed for %s: %s", target_url, exc)
        if not self.relays:
            raise FetchExhausted(target_url, None, last_error)

        while True:
            for index, prefix in enumerate(self.relays):
                state.relay_index = index
                try:
                    response = self._attempt(relay_url(prefix, target_url), self.relay_timeout)
                    logger.debug("[fetch] relay %d served %s in round %d", index, target_url, state.round_index)
                    return response
                except FetchError as exc:
                    last_error = exc
                    logger.debug("[fetch] relay %d failed for %s: %s", index, target_url, exc)
            if self._clock() >= state.deadline:
                break
            self._sleep(self.round_pause)
            state.round_index += 1

        logger.warning("[fetch] gave up on %s after %.1fs", target_url, self._clock() - started)
        raise FetchExhausted(target_url, state, last_error)

    def fetch_direct(self, target_url: str, timeout: float | None = None) -> requests.Response:
        try:
            return self._attempt(target_url, timeout or self.direct_timeout)
        except FetchError as exc:
            raise FetchExhausted(target_url, None, exc) from exc

    def _attempt(self, url: str, timeout: float) -> requests.Response:
        try:
            res = self.session.get(url, headers=self.headers, timeout=timeout)
        except requests.RequestException as exc:
            raise FetchError(str(exc)) from exc
        if res.status_code == 429:
            raise UpstreamRateLimited(f"HTTP 429 from {url}")
        if not 200 <= res.status_code < 300:
            raise FetchError(f"HTTP {res.status_code} from {url}")
        return res
