from __future__ import annotations

import json
import logging
import os
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable
from urllib.parse import urlencode

from src.relay_fetch import (
    DEFAULT_RELAYS,
    DEFAULT_TIME_BUDGET_SEC,
    DEFAULT_USER_AGENT,
    DIRECT_TIMEOUT_SEC,
    RELAY_TIMEOUT_SEC,
    ROUND_PAUSE_SEC,
    FetchExhausted,
    RelayFetcher,
)

logger = logging.getLogger(__name__)

NEWSAPI_URL = "https://newsapi.org/v2/everything"
ARXIV_API = "https://export.arxiv.org/api/query"
PLACEHOLDER_NEWS_KEY = "YOUR_NEWSAPI_KEY_HERE"
DEFAULT_EXPANSIONS_PATH = Path(__file__).with_name("topic_expansions.json")

NEWS_AI_KEYWORDS = ["AI", "artificial intelligence", "machine learning", "deep learning"]
ARXIV_CATEGORIES = ["cs.AI", "cs.LG", "cs.CL", "cs.CV", "cs.RO"]
ARXIV_MAX_RESULTS = 5
NEWS_PAGE_SIZE = 10
NEWS_SUMMARY_FALLBACK_CHARS = 200
RESEARCH_SUMMARY_CHARS = 300
RESEARCH_SOURCE_LABEL = "ArXiv Research"

# Matched case-insensitively against title + summary + authors; first hit wins.
AI_INSTITUTIONS = [
    "OpenAI", "Anthropic", "DeepMind", "Google AI", "Meta AI", "Facebook AI",
    "Microsoft Research", "Stanford AI", "MIT CSAIL", "Carnegie Mellon",
    "Berkeley AI", "NVIDIA Research", "Tesla AI", "Cohere", "Stability AI",
]

DEDUP_KEY_CHARS = 50
MIN_TITLE_CHARS = 20
MIN_SUMMARY_CHARS = 50
JUNK_PATTERNS = ["removed", "deleted", "unavailable", "[removed]", "click here", "subscribe now", "read more"]

TOPIC_MATCH_POINTS = 10
RESEARCH_POINTS = 5
RECENT_POINTS = 3
RECENT_WINDOW = timedelta(days=7)

EXPANSION_PREFIXES = ("deep", "neural")
EXPANSION_SUFFIXES = ("models", "learning")
MAX_EXPANSION_TERMS = 8
TOPIC_STOPWORDS = {"and", "or", "the", "a", "an", "for", "of", "in", "on", "with", "to", "ai"}

DEFAULT_TOPICS = [
    "large language models",
    "computer vision",
    "reinforcement learning",
    "neural networks",
    "natural language processing",
    "machine learning",
    "deep learning",
    "artificial general intelligence",
    "AI safety",
    "transformers",
    "diffusion models",
    "robotics AI",
]


class ItemKind(str, Enum):
    NEWS = "news"
    RESEARCH = "research"


class MalformedUpstreamPayload(ValueError):
    pass


@dataclass(frozen=True)
class NormalizedItem:
    title: str
    summary: str
    source: str
    topic: str
    published_at: datetime | None
    kind: ItemKind
    url: str | None = None
    authors: str | None = None

    def to_dict(self, now: datetime | None = None) -> dict:
        return {
            "title": self.title,
            "summary": self.summary,
            "source": self.source,
            "topic": self.topic,
            "publishedAt": self.published_at.isoformat() if self.published_at else None,
            "url": self.url,
            "type": self.kind.value,
            "authors": self.authors,
            "time": format_time_ago(self.published_at, now=now),
        }


def clean_text(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "")).strip()


def _strip_html(text: str) -> str:
    if not text:
        return ""
    return clean_text(re.sub(r"<[^>]+>", " ", text))


def normalize_topic(topic: str) -> str:
    return clean_text(topic).lower()


def parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    from dateutil import parser as date_parser

    try:
        dt = date_parser.parse(raw)
    except (ValueError, OverflowError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_time_ago(published_at: datetime | None, now: datetime | None = None) -> str:
    if published_at is None:
        return ""
    now = now or datetime.now(timezone.utc)
    hours = int((now - published_at).total_seconds() // 3600)
    if hours < 1:
        return "Less than 1 hour ago"
    if hours < 24:
        return f"{hours} hour{'' if hours == 1 else 's'} ago"
    days = hours // 24
    return f"{days} day{'' if days == 1 else 's'} ago"


# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------
def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "").strip())
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "").strip())
    except ValueError:
        return default


def _csv(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [s.strip() for s in raw.split(",") if s.strip()]


@dataclass
class Settings:
    news_api_key: str = ""
    topics: list[str] = field(default_factory=lambda: list(DEFAULT_TOPICS))
    relay_prefixes: list[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    time_budget: float = DEFAULT_TIME_BUDGET_SEC
    direct_timeout: float = DIRECT_TIMEOUT_SEC
    relay_timeout: float = RELAY_TIMEOUT_SEC
    round_pause: float = ROUND_PAUSE_SEC
    cache_minutes: int = 30
    max_news_topics: int = 5
    max_research_topics: int = 3
    user_agent: str = DEFAULT_USER_AGENT
    expansions_path: str = str(DEFAULT_EXPANSIONS_PATH)

    @property
    def has_news_credential(self) -> bool:
        key = (self.news_api_key or "").strip()
        return bool(key) and key != PLACEHOLDER_NEWS_KEY

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            news_api_key=os.getenv("NEWSAPI_KEY", ""),
            topics=_csv("NEWS_TOPICS", DEFAULT_TOPICS),
            time_budget=_get_float("FETCH_TIME_BUDGET", DEFAULT_TIME_BUDGET_SEC),
            cache_minutes=_get_int("CACHE_MINUTES", 30),
            user_agent=os.getenv("NEWS_USER_AGENT", DEFAULT_USER_AGENT),
            expansions_path=os.getenv("TOPIC_EXPANSIONS_PATH", str(DEFAULT_EXPANSIONS_PATH)),
        )


def load_settings(config_path: str | None = None) -> Settings:
    settings = Settings.from_env()
    if not config_path or not Path(config_path).exists():
        return settings
    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    known = {fld.name for fld in fields(Settings)}
    for name, value in data.items():
        if name in known:
            setattr(settings, name, value)
        else:
            logger.warning("[config] ignoring unknown setting %r in %s", name, config_path)
    return settings


# ---------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------
@dataclass
class CacheEntry:
    key: str
    items: list[NormalizedItem]
    fetched_at: float


def cache_key(source_id: str, topics: Iterable[str]) -> str:
    return f"{source_id}:{'|'.join(sorted(normalize_topic(t) for t in topics))}"


class TimedCache:
    def __init__(self, freshness: timedelta = timedelta(minutes=30), clock: Callable[[], float] = time.monotonic):
        self.freshness = freshness.total_seconds()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> list[NormalizedItem] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self.freshness:
            # stale: drop it so the caller rebuilds
            del self._entries[key]
            return None
        return list(entry.items)

    def put(self, key: str, items: list[NormalizedItem]) -> None:
        self._entries[key] = CacheEntry(key=key, items=list(items), fetched_at=self._clock())

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------
# Dedup / quality
# ---------------------------------------------------------------------
def dedup_key(item: NormalizedItem) -> str:
    return item.title.lower()[:DEDUP_KEY_CHARS]


def dedupe_items(items: Iterable[NormalizedItem]) -> list[NormalizedItem]:
    seen: set[str] = set()
    out: list[NormalizedItem] = []
    for item in items:
        key = dedup_key(item)
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def passes_quality(item: NormalizedItem) -> bool:
    title = item.title.lower()
    summary = item.summary.lower()
    if len(title) < MIN_TITLE_CHARS or len(summary) < MIN_SUMMARY_CHARS:
        return False
    return not any(p in title or p in summary for p in JUNK_PATTERNS)


def quality_filter(items: Iterable[NormalizedItem]) -> list[NormalizedItem]:
    # Research items are never length/junk filtered.
    return [it for it in items if it.kind is not ItemKind.NEWS or passes_quality(it)]


# ---------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------
def relevance_score(item: NormalizedItem, topics: Iterable[str], now: datetime | None = None) -> int:
    """Heuristic score: topic hits, a research bonus and a recency bonus.

    The weights are empirical, not a calibrated relevance model.
    """
    now = now or datetime.now(timezone.utc)
    text = f"{item.title} {item.summary}".lower()
    score = sum(TOPIC_MATCH_POINTS for t in topics if t.lower() in text)
    if item.kind is ItemKind.RESEARCH:
        score += RESEARCH_POINTS
    if item.published_at is not None and now - item.published_at <= RECENT_WINDOW:
        score += RECENT_POINTS
    return score


def rank_items(items: Iterable[NormalizedItem], topics: Iterable[str], now: datetime | None = None) -> list[NormalizedItem]:
    now = now or datetime.now(timezone.utc)
    topics = list(topics)
    oldest = datetime.min.replace(tzinfo=timezone.utc)

    def _key(item: NormalizedItem) -> tuple[int, datetime]:
        return (relevance_score(item, topics, now), item.published_at or oldest)

    # sorted() stays stable with reverse=True, so full ties keep input order
    return sorted(items, key=_key, reverse=True)


# ---------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------
def _quote(term: str) -> str:
    return f'"{term}"' if re.search(r"[\s\-]", term) else term


def build_news_query(topic: str) -> str:
    keywords = " OR ".join(_quote(k) for k in NEWS_AI_KEYWORDS)
    return f'"{clean_text(topic)}" AND ({keywords})'


def load_topic_expansions(path: str | Path | None = None) -> dict[str, list[str]]:
    path = Path(path or DEFAULT_EXPANSIONS_PATH)
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return {normalize_topic(k): [clean_text(t) for t in v if clean_text(t)] for k, v in data.items()}


def synthesize_expansion(topic: str) -> list[str]:
    base = normalize_topic(topic)
    words = [w for w in re.findall(r"[a-z0-9][a-z0-9\-]+", base) if w not in TOPIC_STOPWORDS]
    candidates = [base, *words]
    candidates += [f"{p} {base}" for p in EXPANSION_PREFIXES]
    candidates += [f"{base} {s}" for s in EXPANSION_SUFFIXES]
    out: list[str] = []
    for term in candidates:
        if term and term not in out:
            out.append(term)
    return out[:MAX_EXPANSION_TERMS]


def expand_topic(topic: str, expansions: dict[str, list[str]]) -> list[str]:
    norm = normalize_topic(topic)
    for canonical, terms in expansions.items():
        if canonical in norm or norm in canonical:
            return terms[:MAX_EXPANSION_TERMS]
    return synthesize_expansion(topic)


def build_arxiv_query(topic: str, expansions: dict[str, list[str]]) -> str:
    categories = " OR ".join(f"cat:{c}" for c in ARXIV_CATEGORIES)
    terms = " OR ".join(f'all:"{t}"' for t in expand_topic(topic, expansions))
    return f"({categories}) AND ({terms})"


def attribute_source(title: str, summary: str, authors: str) -> str:
    text = f"{title} {summary} {authors}".lower()
    for name in AI_INSTITUTIONS:
        if name.lower() in text:
            return name
    return RESEARCH_SOURCE_LABEL


# ---------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------
def normalize_news_article(article: dict, topic: str) -> NormalizedItem:
    if not isinstance(article, dict):
        raise MalformedUpstreamPayload(f"article is {type(article).__name__}, not an object")
    title = clean_text(article.get("title") or "")
    summary = _strip_html(article.get("description") or "")
    if not summary:
        content = _strip_html(article.get("content") or "")
        if content:
            summary = content[:NEWS_SUMMARY_FALLBACK_CHARS] + "..."
    if not title or not summary:
        raise MalformedUpstreamPayload(f"news article missing title or summary: {article.get('url', '')}")
    source = article.get("source") or {}
    return NormalizedItem(
        title=title,
        summary=summary,
        source=clean_text(source.get("name", "") if isinstance(source, dict) else str(source)) or "NewsAPI",
        topic=topic,
        published_at=parse_timestamp(article.get("publishedAt")),
        kind=ItemKind.NEWS,
        url=article.get("url") or None,
    )


def normalize_arxiv_entry(entry, topic: str) -> NormalizedItem:
    title = clean_text(entry.get("title", ""))
    summary = clean_text(entry.get("summary", ""))
    if not title or not summary:
        raise MalformedUpstreamPayload(f"arXiv entry missing title or summary: {entry.get('id', '')}")
    authors = ", ".join(clean_text(a.get("name", "")) for a in entry.get("authors", []) if a.get("name"))
    if len(summary) > RESEARCH_SUMMARY_CHARS:
        short = summary[:RESEARCH_SUMMARY_CHARS] + "..."
    else:
        short = summary
    return NormalizedItem(
        title=title,
        summary=short,
        source=attribute_source(title, summary, authors),
        topic=topic,
        published_at=parse_timestamp(entry.get("published", "") or entry.get("updated", "")),
        kind=ItemKind.RESEARCH,
        url=entry.get("id") or entry.get("link") or None,
        authors=authors or None,
    )


# ---------------------------------------------------------------------
# Source adapters
# ---------------------------------------------------------------------
class NewsSource:
    source_id = "news"

    def __init__(self, settings: Settings, cache: TimedCache, fetcher: RelayFetcher):
        self.settings = settings
        self.cache = cache
        self.fetcher = fetcher

    def fetch(self, topics: list[str]) -> list[NormalizedItem]:
        if not self.settings.has_news_credential:
            logger.warning("[news] no NewsAPI key configured; returning no articles")
            return []
        key = cache_key(self.source_id, topics)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("[news] using cached articles for %s", key)
            return cached

        articles: list[NormalizedItem] = []
        for topic in topics[: self.settings.max_news_topics]:
            articles.extend(self._fetch_topic(topic))
        result = quality_filter(dedupe_items(articles))
        self.cache.put(key, result)
        logger.info("[news] kept %d of %d articles", len(result), len(articles))
        return result

    def _fetch_topic(self, topic: str) -> list[NormalizedItem]:
        params = {
            "q": build_news_query(topic),
            "sortBy": "publishedAt",
            "language": "en",
            "pageSize": NEWS_PAGE_SIZE,
            "apiKey": self.settings.news_api_key,
        }
        try:
            res = self.fetcher.fetch(f"{NEWSAPI_URL}?{urlencode(params)}", time_budget=self.settings.time_budget)
            payload = res.json()
        except FetchExhausted:
            # the request URL carries the API key, so it stays out of the log
            logger.warning("[news] skipping topic %r: no response within %.1fs", topic, self.settings.time_budget)
            return []
        except ValueError as exc:
            logger.warning("[news] skipping topic %r: unreadable response (%s)", topic, exc)
            return []
        if not isinstance(payload, dict) or payload.get("status") == "error":
            message = payload.get("message", "provider error") if isinstance(payload, dict) else "unexpected payload"
            logger.warning("[news] skipping topic %r: %s", topic, message)
            return []

        items: list[NormalizedItem] = []
        articles = payload.get("articles") or []
        if not isinstance(articles, list):
            logger.warning("[news] articles for topic %r is %s, not a list", topic, type(articles).__name__)
            return []
        for article in articles:
            try:
                items.append(normalize_news_article(article, topic))
            except MalformedUpstreamPayload as exc:
                logger.debug("[news] dropped article: %s", exc)
        return items


class ResearchSource:
    source_id = "research"

    def __init__(
        self,
        settings: Settings,
        cache: TimedCache,
        fetcher: RelayFetcher,
        expansions: dict[str, list[str]] | None = None,
    ):
        self.settings = settings
        self.cache = cache
        self.fetcher = fetcher
        self.expansions = expansions if expansions is not None else load_topic_expansions(settings.expansions_path)

    def fetch(self, topics: list[str]) -> list[NormalizedItem]:
        key = cache_key(self.source_id, topics)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("[research] using cached papers for %s", key)
            return cached

        papers: list[NormalizedItem] = []
        for topic in topics[: self.settings.max_research_topics]:
            papers.extend(self._fetch_topic(topic))
        result = dedupe_items(papers)
        self.cache.put(key, result)
        logger.info("[research] kept %d of %d papers", len(result), len(papers))
        return result

    def _fetch_topic(self, topic: str) -> list[NormalizedItem]:
        import feedparser

        params = {
            "search_query": build_arxiv_query(topic, self.expansions),
            "start": 0,
            "max_results": ARXIV_MAX_RESULTS,
            "sortBy": "submittedDate",
            "sortOrder": "descending",
        }
        # arXiv is CORS-open: direct request only.
        try:
            res = self.fetcher.fetch_direct(f"{ARXIV_API}?{urlencode(params)}")
        except FetchExhausted as exc:
            logger.warning("[research] skipping topic %r: %s", topic, exc)
            return []

        feed = feedparser.parse(res.text)
        if feed.bozo and not feed.entries:
            logger.warning("[research] unparsable feed for %r: %s", topic, getattr(feed, "bozo_exception", "unknown"))
            return []
        items: list[NormalizedItem] = []
        for entry in feed.entries:
            try:
                items.append(normalize_arxiv_entry(entry, topic))
            except MalformedUpstreamPayload as exc:
                logger.debug("[research] dropped entry: %s", exc)
        return items


# ---------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------
class NewsDigest:
    """Fetches news and research for a topic list and returns one ranked list.

    Both sources run concurrently; each walks its topics one request at a
    time. ``fetch_all`` never raises for missing data: a failing source
    contributes nothing and the rest of the result is still ranked.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        cache: TimedCache | None = None,
        fetcher: RelayFetcher | None = None,
    ):
        self.settings = settings if settings is not None else Settings.from_env()
        if cache is None:
            cache = TimedCache(freshness=timedelta(minutes=self.settings.cache_minutes))
        self.cache = cache
        # requests.Session is not thread-safe: each source gets its own
        # fetcher unless the caller injects one to share.
        self.fetcher = fetcher
        self.news = NewsSource(self.settings, self.cache, fetcher if fetcher is not None else self._make_fetcher())
        self.research = ResearchSource(self.settings, self.cache, fetcher if fetcher is not None else self._make_fetcher())

    def _make_fetcher(self) -> RelayFetcher:
        return RelayFetcher(
            relays=self.settings.relay_prefixes,
            direct_timeout=self.settings.direct_timeout,
            relay_timeout=self.settings.relay_timeout,
            round_pause=self.settings.round_pause,
            user_agent=self.settings.user_agent,
        )

    def fetch_all(self, topics: list[str] | None = None, now: datetime | None = None) -> list[NormalizedItem]:
        topics = [t for t in (topics if topics is not None else self.settings.topics) if clean_text(t)]
        t0 = time.perf_counter()
        sources = {"news": self.news, "research": self.research}
        results: dict[str, list[NormalizedItem]] = {}
        with ThreadPoolExecutor(max_workers=len(sources)) as pool:
            futures = {name: pool.submit(src.fetch, topics) for name, src in sources.items()}
            for name, future in futures.items():
                try:
                    results[name] = future.result()
                except Exception:
                    logger.exception("[digest] %s source failed; continuing without it", name)
                    results[name] = []
        ranked = rank_items(results["news"] + results["research"], topics, now=now)
        logger.info(
            "[digest] news=%d research=%d ranked=%d total=%.2fs",
            len(results["news"]),
            len(results["research"]),
            len(ranked),
            time.perf_counter() - t0,
        )
        return ranked


def fetch_all_news(topics: list[str] | None = None, config_path: str | None = None) -> list[NormalizedItem]:
    return NewsDigest(load_settings(config_path)).fetch_all(topics)
