"""Search & scoring resolver.

Turns a ticker into the best upstream candidate from the search endpoint.

Filtering, in order:
1. Hard blocklist of known wrapped/bridged/staked ids (static set plus
   COINQUOTE_BLOCKLIST). Always applied.
2. Wrapped/pegged/bridged/staked heuristics, relaxed by caller flags and
   never applied to protected protocol tokens.
3. Stablecoin guard: core stablecoins are dropped unless the caller asked
   for stablecoins.

Scoring: +50 exact symbol, +40 exact name, +max(0, 100 - rank), -100 if the
candidate still looks wrapped, +10 for a plain native-looking id. Ties go
to the shortest symbol, then the lexicographically smallest id.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Protocol

from coinquote.core.config import settings
from coinquote.core.logging import get_logger
from coinquote.domain.ticker import Candidate, ResolveFlags, ScoredCandidate
from coinquote.services import poisoning
from coinquote.services.canonical import lookup_canonical

logger = get_logger("services.search_resolver")


STATIC_BLOCKED_IDS = frozenset({
    "weth", "wrapped-ether", "wrapped-bitcoin", "wbtc", "binance-wrapped-btc",
    "binance-peg-ethereum", "binance-peg-bitcoin", "wrapped-steth", "wrapped-solana", "wsol",
    "staked-ether", "steth", "coinbase-wrapped-staked-eth",
    "solana-wormhole", "ethereum-wormhole", "bitcoin-wormhole",
    "wrapped-avax", "wrapped-bnb", "wrapped-matic", "wmatic", "matic-wormhole", "wrapped-fantom",
    "bridged-usdc", "bridged-usdt", "bridged-dai",
    "multichain-bridged-usdc", "multichain-bridged-btc", "multichain-bridged-eth",
    "synapse-bridged-usdc", "synapse-bridged-usdt",
    "anyswap-eth", "anyswap-btc", "anyswap-bnb",
    "polygon-bridged-usdc", "arbitrum-bridged-usdc", "optimism-bridged-eth",
})

# Words that only carry caller intent; stripped from the query text
_FLAG_PATTERNS: dict[str, re.Pattern[str]] = {
    "include_wrapped": re.compile(r"\b(wrapped|wbtc|weth)\b"),
    "include_staked": re.compile(r"\b(staked|restaked|lst|lrt)\b"),
    "include_bridged": re.compile(r"\b(bridged|bridge)\b"),
    "include_stablecoins": re.compile(r"\b(stable\s*coins?)\b"),
    "force_exact": re.compile(r"\b(exact|force)\b"),
}
_INTENT_WORDS_RE = re.compile(
    r"\b(wrapped|staked|restaked|bridged|bridge|stable\s*coins?|exact|force)\b"
)


class SearchClient(Protocol):
    async def search(self, query: str) -> list[Candidate]: ...


def detect_flags(text: str) -> ResolveFlags:
    """Inclusion flags from intent keywords in free-form input."""
    lowered = text.lower()
    return ResolveFlags(
        **{name: bool(pattern.search(lowered)) for name, pattern in _FLAG_PATTERNS.items()}
    )


def strip_intent_words(text: str) -> str:
    """Remove intent-only keywords, keeping the input when nothing else is left."""
    stripped = " ".join(_INTENT_WORDS_RE.sub(" ", text.lower()).split())
    return stripped or text.strip().lower()


def merge_flags(a: ResolveFlags, b: ResolveFlags | None) -> ResolveFlags:
    if b is None:
        return a
    return ResolveFlags(
        **{name: getattr(a, name) or getattr(b, name) for name in ResolveFlags.model_fields}
    )


class SearchResolver:
    """Filters and scores search candidates."""

    def __init__(self, client: SearchClient, blocklist: Iterable[str] | None = None):
        self._client = client
        extra = settings.blocklist if blocklist is None else blocklist
        self.blocked_ids = STATIC_BLOCKED_IDS | {b.strip().lower() for b in extra if b.strip()}

    def is_blocked(self, candidate: Candidate) -> bool:
        return candidate.id.lower() in self.blocked_ids

    @staticmethod
    def score(query: str, candidate: Candidate) -> float:
        q = query.lower()
        score = 0.0
        if candidate.symbol.lower() == q:
            score += 50
        if candidate.name.lower() == q:
            score += 40
        if candidate.market_cap_rank is not None:
            score += max(0, 100 - candidate.market_cap_rank)
        if poisoning.looks_wrapped(candidate) and not poisoning.is_protected(candidate):
            score -= 100
        if "-" not in candidate.id and "wrapped" not in candidate.id:
            score += 10
        return score

    def evaluate(
        self, query: str, candidates: list[Candidate], flags: ResolveFlags | None = None
    ) -> list[ScoredCandidate]:
        """Annotate every candidate; `filtered` marks the ones that cannot win."""
        flags = flags or ResolveFlags()
        scored = []
        for candidate in candidates:
            blocked = self.is_blocked(candidate)
            wrapped = poisoning.looks_wrapped(candidate)
            stable = poisoning.is_stablecoin(candidate)
            filtered = (
                blocked
                or poisoning.blocked_by_heuristics(candidate, flags)
                or (stable and not flags.include_stablecoins)
            )
            scored.append(
                ScoredCandidate(
                    candidate=candidate,
                    score=self.score(query, candidate),
                    blocked=blocked,
                    looks_wrapped=wrapped,
                    stablecoin=stable,
                    filtered=filtered,
                )
            )
        return scored

    def pick_best(
        self, query: str, candidates: list[Candidate], flags: ResolveFlags | None = None
    ) -> Candidate | None:
        survivors = [s for s in self.evaluate(query, candidates, flags) if not s.filtered]
        if not survivors:
            return None
        survivors.sort(key=lambda s: (-s.score, len(s.candidate.symbol), s.candidate.id))
        return survivors[0].candidate

    async def resolve(self, ticker: str, flags: ResolveFlags | None = None) -> Candidate | None:
        """Best surviving candidate for the ticker, or None.

        Upstream errors propagate so the caller can record the failure.
        """
        candidates = await self._client.search(ticker)
        winner = self.pick_best(ticker, candidates, flags)
        if winner is None:
            logger.info(f"No candidate survived filtering for {ticker} ({len(candidates)} hits)")
        else:
            logger.debug(f"Search picked {ticker} -> {winner.id} out of {len(candidates)}")
        return winner

    async def explain(self, query: str, flags: ResolveFlags | None = None) -> dict[str, Any]:
        """Every candidate with its flags and score, plus the winner."""
        text = strip_intent_words(query)
        flags = merge_flags(detect_flags(query), flags)
        canonical = lookup_canonical(text)
        if canonical:
            return {
                "query": query,
                "method": "canonical",
                "resolved_id": canonical,
                "flags": flags.model_dump(),
                "candidates": [],
            }

        candidates = await self._client.search(text)
        scored = self.evaluate(text, candidates, flags)
        winner = self.pick_best(text, candidates, flags)
        ranked = sorted(scored, key=lambda s: (-s.score, len(s.candidate.symbol), s.candidate.id))
        return {
            "query": query,
            "method": "search_and_filter",
            "resolved_id": winner.id if winner else None,
            "flags": flags.model_dump(),
            "candidates": [s.model_dump() for s in ranked],
        }
