"""Learning resolver: persisted ticker -> id mappings with poisoning guards.

Resolution order for a normalized ticker:
1. Bounded in-memory cache (per-entry expiry, LRU eviction at capacity)
2. Persisted mapping (banned rows refuse, expired rows fall through)
3. Failure backoff (refuse without any network call until retry_after)
4. Search & scoring resolver, then the learning ban rules, then persist

Hit counts are buffered in memory and flushed by HitFlusher on an interval.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, NamedTuple

from cachetools import TLRUCache

from coinquote.core.clock import Clock, as_utc, system_clock
from coinquote.core.config import settings
from coinquote.core.exceptions import UpstreamRateLimitError, UpstreamTransportError
from coinquote.core.logging import get_logger
from coinquote.domain.ticker import FailureReason, Resolution, ResolveFlags
from coinquote.repositories.learning_store import SqlLearningStore
from coinquote.services.data_providers.resilience import RequestCoalescer
from coinquote.services.poisoning import check_learning_ban
from coinquote.services.search_resolver import SearchResolver

logger = get_logger("services.learning_resolver")

MAX_TICKER_LENGTH = 20
RECENT_WINDOW = timedelta(hours=24)
INTERNAL_ERROR = "internal_error"

_PAIR_SUFFIX_RE = re.compile(r"[-_/](usdt|usdc|usd|busd|dai|eur|btc|eth)$")
_DERIVATIVE_SUFFIX_RE = re.compile(r"[-_.]?(perp|perpetual|future|fut)$")
_NOISE_RE = re.compile(r"[-_.\s]")

CHAIN_KEYWORDS: dict[str, str] = {
    "eth": "eth",
    "ethereum": "eth",
    "sol": "sol",
    "solana": "sol",
    "bsc": "bsc",
    "poly": "polygon",
    "polygon": "polygon",
    "avax": "avax",
    "avalanche": "avax",
}


# =============================================================================
# Pure helpers
# =============================================================================


def normalize_ticker(raw: str | None) -> str | None:
    """Lower-case, strip cashtag, pair and derivative suffixes and punctuation.

    Returns None when nothing usable (1..20 chars) remains. A real symbol that
    ends in a quote-like suffix after a separator (e.g. "abc-usd") loses it.
    """
    if not raw or not isinstance(raw, str):
        return None
    s = raw.lower().strip()
    s = s.removeprefix("$")
    s = _PAIR_SUFFIX_RE.sub("", s)
    s = _DERIVATIVE_SUFFIX_RE.sub("", s)
    s = _NOISE_RE.sub("", s)
    if not 1 <= len(s) <= MAX_TICKER_LENGTH:
        return None
    return s


def split_chain_hint(raw: str, default_chain: str | None = None) -> tuple[str, str | None]:
    """Pull a chain keyword out of multi-word input ("pepe eth" -> ("pepe", "eth"))."""
    tokens = raw.lower().split()
    if len(tokens) > 1:
        for i, token in enumerate(tokens):
            chain = CHAIN_KEYWORDS.get(token)
            if chain:
                rest = tokens[:i] + tokens[i + 1:]
                return " ".join(rest), chain
    return raw, default_chain


def cache_key(ticker: str, chain: str | None = None) -> str:
    return f"{ticker}|{chain}" if chain else ticker


class _CacheEntry(NamedTuple):
    coin_id: str
    expires_at: float
    confidence: int
    chain: str | None


# =============================================================================
# Smart resolver
# =============================================================================


class SmartResolver:
    """Persisted, self-learning ticker resolver."""

    def __init__(
        self,
        search: SearchResolver,
        store: SqlLearningStore,
        clock: Clock = system_clock,
        cache_size: int | None = None,
        base_confidence: int | None = None,
        high_confidence_ttl: timedelta | None = None,
        default_ttl: timedelta | None = None,
        low_confidence_ttl: timedelta | None = None,
        backoff_base: int | None = None,
        backoff_cap_minutes: int | None = None,
        default_chain: str | None = None,
        on_rate_limit: Callable[[UpstreamRateLimitError], None] | None = None,
    ):
        self._search = search
        self._store = store
        self._clock = clock
        self._base_confidence = (
            settings.base_confidence if base_confidence is None else base_confidence
        )
        self._high_ttl = high_confidence_ttl or timedelta(days=settings.high_confidence_ttl_days)
        self._default_ttl = default_ttl or timedelta(days=settings.default_ttl_days)
        self._low_ttl = low_confidence_ttl or timedelta(days=settings.low_confidence_ttl_days)
        self._backoff_base = backoff_base or settings.backoff_base
        self._backoff_cap = backoff_cap_minutes or settings.backoff_cap_minutes
        self._default_chain = default_chain if default_chain is not None else settings.default_chain
        self._on_rate_limit = on_rate_limit

        self._memory: TLRUCache[str, _CacheEntry] = TLRUCache(
            maxsize=cache_size or settings.resolver_cache_size,
            ttu=lambda _key, entry, _now: entry.expires_at,
            timer=clock.time,
        )
        self._hits: Counter[str] = Counter()
        self._coalescer = RequestCoalescer()
        self.warmup_complete = False

    # ------------------------------------------------------------------
    # Confidence, TTL and backoff
    # ------------------------------------------------------------------

    def compute_confidence(self, ticker: str, coin_id: str) -> int:
        confidence = self._base_confidence
        if ticker in coin_id or len(ticker) >= 3:
            confidence += 10
        if len(ticker) <= 2:
            confidence -= 20
        return max(0, min(100, confidence))

    def ttl_for(self, confidence: int) -> timedelta:
        if confidence >= 80:
            return self._high_ttl
        if confidence <= 50:
            return self._low_ttl
        return self._default_ttl

    def backoff(self, failure_count: int) -> timedelta:
        """min(base ** count, cap) minutes."""
        minutes = min(self._backoff_base ** failure_count, self._backoff_cap)
        return timedelta(minutes=minutes)

    # ------------------------------------------------------------------
    # Memory cache and hit buffer
    # ------------------------------------------------------------------

    def _remember(
        self, key: str, coin_id: str, confidence: int, chain: str | None,
        expires_at: datetime | None = None,
    ) -> None:
        deadline = self._clock.time() + self._default_ttl.total_seconds()
        if expires_at is not None:
            deadline = min(deadline, expires_at.timestamp())
        self._memory[key] = _CacheEntry(coin_id, deadline, confidence, chain)

    def _purge(self, ticker: str) -> None:
        for key in list(self._memory.keys()):
            if key == ticker or key.startswith(f"{ticker}|"):
                self._memory.pop(key, None)
        self._hits.pop(ticker, None)

    def record_hit(self, ticker: str) -> None:
        self._hits[ticker] += 1

    @property
    def pending_hits(self) -> int:
        return len(self._hits)

    async def flush_hits(self) -> int:
        """Write buffered hit counts. Counts survive a failed write."""
        if not self._hits:
            return 0
        batch, self._hits = self._hits, Counter()
        try:
            touched = await self._store.add_hits(dict(batch), self._clock.now())
        except Exception:
            self._hits.update(batch)
            raise
        logger.info(f"Flushed {len(batch)} hit counters")
        return touched

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        raw: str,
        flags: ResolveFlags | None = None,
        default_chain: str | None = None,
    ) -> Resolution:
        """Resolve free-form input. Never raises: every failure is a miss with a reason."""
        started = time.perf_counter()
        text, chain = split_chain_hint(raw, default_chain or self._default_chain or None)
        ticker = normalize_ticker(text)
        if ticker is None:
            logger.debug(f"Invalid ticker input: {raw!r}")
            return Resolution.miss(raw, "invalid_ticker")

        try:
            result = await self._resolve_ticker(raw, ticker, chain, flags)
        except Exception:
            logger.exception(f"Resolution of {ticker} failed")
            result = Resolution.miss(raw, INTERNAL_ERROR, ticker)

        duration_ms = (time.perf_counter() - started) * 1000
        level = "info" if result.source == "learned" or duration_ms > 100 else "debug"
        getattr(logger, level)(
            f"{raw} -> {result.id or 'none'} | source={result.source} "
            f"reason={result.reason or '-'} | {duration_ms:.0f}ms",
            extra={"ticker": ticker, "chain": chain, "source": result.source},
        )
        return result

    async def _resolve_ticker(
        self, raw: str, ticker: str, chain: str | None, flags: ResolveFlags | None
    ) -> Resolution:
        explicit = flags is not None and any(flags.model_dump().values())
        key = cache_key(ticker, chain)
        now = self._clock.now()

        if not explicit:
            entry = self._memory.get(key)
            if entry is not None:
                self.record_hit(ticker)
                return Resolution(query=raw, ok=True, id=entry.coin_id, ticker=ticker, source="memory")

        mapping = await self._store.get_mapping(ticker)
        if mapping is not None:
            if mapping.is_banned:
                logger.debug(f"Banned ticker: {ticker} ({mapping.ban_reason})")
                return Resolution.miss(raw, f"banned:{mapping.ban_reason or 'banned'}", ticker)

            expires_at = as_utc(mapping.expires_at)
            servable = not explicit and (chain is None or mapping.chain in (None, chain))
            if servable and expires_at is not None and expires_at <= now:
                logger.info(f"Expired mapping for {ticker}, revalidating")
            elif servable:
                self._remember(key, mapping.canonical_id, mapping.confidence_score, mapping.chain, expires_at)
                self.record_hit(ticker)
                return Resolution(
                    query=raw, ok=True, id=mapping.canonical_id, ticker=ticker, source="database"
                )

        failure = await self._store.get_failure(ticker)
        if failure is not None:
            retry_after = as_utc(failure.retry_after)
            if retry_after > now:
                logger.debug(f"In backoff: {ticker} until {retry_after.isoformat()}")
                return Resolution.miss(raw, "backoff", ticker)

        if explicit:
            return await self._coalescer.execute(
                f"search:{key}:{flags.model_dump_json()}",
                lambda: self._search_only(raw, ticker, chain, flags),
            )
        return await self._coalescer.execute(
            f"learn:{key}", lambda: self._learn(raw, ticker, chain)
        )

    async def _run_search(
        self, raw: str, ticker: str, chain: str | None, flags: ResolveFlags | None
    ):
        """Search call with failures recorded. Returns (candidate, miss)."""
        try:
            candidate = await self._search.resolve(ticker, flags)
        except UpstreamRateLimitError as e:
            logger.warning(f"Rate limited while resolving {ticker}")
            await self._record_failure(ticker, FailureReason.RATELIMIT, chain)
            if self._on_rate_limit:
                self._on_rate_limit(e)
            return None, Resolution.miss(raw, FailureReason.RATELIMIT.value, ticker)
        except UpstreamTransportError as e:
            logger.warning(f"Search failed for {ticker}: {e.message}")
            await self._record_failure(ticker, FailureReason.API_ERROR, chain)
            return None, Resolution.miss(raw, FailureReason.API_ERROR.value, ticker)

        if candidate is None:
            await self._record_failure(ticker, FailureReason.NOT_FOUND, chain)
            return None, Resolution.miss(raw, FailureReason.NOT_FOUND.value, ticker)
        return candidate, None

    async def _search_only(
        self, raw: str, ticker: str, chain: str | None, flags: ResolveFlags
    ) -> Resolution:
        """Caller-relaxed search: the result is returned but never learned.

        Learning rules the flags do not relax still refuse the answer; nothing
        is persisted either way.
        """
        candidate, miss = await self._run_search(raw, ticker, chain, flags)
        if miss is not None:
            return miss
        ban_reason = check_learning_ban(ticker, candidate, flags)
        if ban_reason:
            logger.warning(f"Refused explicit search: {ticker} -> {candidate.id} ({ban_reason})")
            return Resolution.miss(raw, f"banned:{ban_reason}", ticker)
        return Resolution(query=raw, ok=True, id=candidate.id, ticker=ticker, source="search")

    async def _learn(self, raw: str, ticker: str, chain: str | None) -> Resolution:
        logger.info(f"Learning new ticker: {ticker} (chain: {chain or 'any'})")
        candidate, miss = await self._run_search(raw, ticker, chain, None)
        if miss is not None:
            return miss

        now = self._clock.now()
        ban_reason = check_learning_ban(ticker, candidate)
        if ban_reason:
            logger.warning(f"Banned from learning: {ticker} -> {candidate.id} ({ban_reason})")
            await self._store.save_banned(ticker, candidate.id, ban_reason, now)
            self._purge(ticker)
            return Resolution.miss(raw, f"banned:{ban_reason}", ticker)

        confidence = self.compute_confidence(ticker, candidate.id)
        expires_at = now + self.ttl_for(confidence)
        await self._store.save_learned(
            ticker, candidate.id, confidence, expires_at, now, chain=chain
        )
        self._remember(cache_key(ticker, chain), candidate.id, confidence, chain, expires_at)
        logger.info(f"Learned: {ticker} -> {candidate.id} (confidence: {confidence})")
        return Resolution(query=raw, ok=True, id=candidate.id, ticker=ticker, source="learned")

    async def _record_failure(
        self, ticker: str, reason: FailureReason, chain: str | None
    ) -> None:
        failure = await self._store.record_failure(
            ticker, reason.value, chain, self._clock.now(), self.backoff
        )
        logger.info(
            f"Resolution failure #{failure.failure_count} for {ticker} ({reason.value}), "
            f"retry after {as_utc(failure.retry_after).isoformat()}"
        )

    # ------------------------------------------------------------------
    # Warmup and stats
    # ------------------------------------------------------------------

    async def warmup(self, limit: int | None = None) -> int:
        """Preload the most-hit usable mappings into memory."""
        limit = settings.warmup_limit if limit is None else limit
        rows = await self._store.top_mappings(limit, self._clock.now())
        for row in rows:
            self._remember(
                cache_key(row.ticker), row.canonical_id, row.confidence_score,
                row.chain, as_utc(row.expires_at),
            )
        self.warmup_complete = True
        logger.info(f"Warmup loaded {len(rows)} mappings into memory")
        return len(rows)

    async def stats(self) -> dict[str, Any]:
        stats = await self._store.stats(self._clock.now(), RECENT_WINDOW)
        self._memory.expire()
        stats.update(
            memory_cache_size=len(self._memory),
            memory_cache_capacity=int(self._memory.maxsize),
            hit_buffer_size=len(self._hits),
            warmup_complete=self.warmup_complete,
            inflight_learns=self._coalescer.get_pending_count(),
        )
        return stats

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def force_ban(self, raw: str, reason: str = "admin_banned") -> bool:
        ticker = normalize_ticker(raw)
        if ticker is None:
            return False
        mapping = await self._store.get_mapping(ticker)
        canonical_id = mapping.canonical_id if mapping else ""
        await self._store.save_banned(ticker, canonical_id, reason, self._clock.now())
        self._purge(ticker)
        logger.warning(f"Admin banned: {ticker} ({reason})")
        return True

    async def force_unban(self, raw: str) -> bool:
        ticker = normalize_ticker(raw)
        if ticker is None:
            return False
        changed = await self._store.unban(ticker, self._clock.now())
        self._purge(ticker)
        logger.info(f"Admin unbanned: {ticker}" if changed else f"Unban: {ticker} was not banned")
        return changed

    async def force_relearn(self, raw: str) -> Resolution:
        """Forget everything about the ticker and resolve it from scratch."""
        ticker = normalize_ticker(raw)
        if ticker is None:
            return Resolution.miss(raw, "invalid_ticker")
        self._purge(ticker)
        await self._store.forget(ticker)
        logger.info(f"Admin relearn: {ticker}")
        return await self._learn(raw, ticker, None)

    async def force_map(
        self,
        raw: str,
        coin_id: str,
        chain: str | None = None,
        contract_address: str | None = None,
    ) -> bool:
        """Pin a mapping (confidence 100, no TTL) and clear failure state."""
        ticker = normalize_ticker(raw)
        if ticker is None or not coin_id:
            return False
        await self._store.save_admin(
            ticker, coin_id, self._clock.now(),
            chain=chain, contract_address=contract_address,
        )
        self._purge(ticker)
        self._remember(cache_key(ticker), coin_id, 100, chain)
        logger.info(f"Admin mapped: {ticker} -> {coin_id}")
        return True


# =============================================================================
# Background hit flusher
# =============================================================================


class HitFlusher:
    """Flushes buffered hit counts on a fixed interval until stopped."""

    def __init__(self, resolver: SmartResolver, interval: float | None = None):
        self._resolver = resolver
        self._interval = interval or settings.hit_flush_interval
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="hit-flusher")

    async def stop(self) -> None:
        """Signal the loop, wait for it, then flush whatever is left."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        await self._flush_once()

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                await self._flush_once()

    async def _flush_once(self) -> None:
        try:
            await self._resolver.flush_hits()
        except Exception as e:
            logger.error(f"Hit flush failed, keeping {self._resolver.pending_hits} counters: {e}")
