"""Anti-poisoning rules.

Two ordered rule lists share one shape:

- CANDIDATE_RULES flag search hits that look wrapped, pegged, bridged or
  staked. The search resolver drops them unless the caller opted in.
- LEARNING_RULES run on every freshly learned ticker -> id mapping before it
  is persisted, and on explicit-flag search answers minus the rules those
  flags relax. The first match names the ban reason.
"""

from __future__ import annotations

import re
from typing import Callable, NamedTuple

from coinquote.domain.ticker import Candidate, ResolveFlags


class BanRule(NamedTuple):
    """Named predicate over (normalized ticker, candidate)."""

    name: str
    match: Callable[[str, Candidate], bool]
    # ResolveFlags attribute that lets a caller opt back in
    relaxed_by: str | None = None


# Legit protocol tokens whose names contain trigger words
PROTECTED_PROTOCOLS = frozenset(
    {"wormhole", "synapse-2", "synapse protocol", "multichain", "anyswap"}
)

STABLES_CORE = frozenset({
    "tether", "usdt", "usd-coin", "usdc", "dai", "tusd", "usdp", "paxos-standard",
    "gusd", "frax", "lusd", "fdusd", "pyusd", "usdd", "usdj", "ust", "terrausd",
    "ustc", "gho", "crvusd", "susd", "eurt", "eurc", "eure", "xsgd", "usde",
    "ageur", "cusd",
})

STABLE_TICKERS = frozenset({"usdc", "usdt", "dai", "busd", "tusd", "frax"})

_DERIVATIVE_CATEGORY_RE = re.compile(r"\b(lst|lrt)\b|bridged|wrapped", re.IGNORECASE)


def is_protected(candidate: Candidate) -> bool:
    return (
        candidate.id.lower() in PROTECTED_PROTOCOLS
        or candidate.name.lower() in PROTECTED_PROTOCOLS
    )


def is_stablecoin(candidate: Candidate) -> bool:
    return any(
        value.lower() in STABLES_CORE
        for value in (candidate.id, candidate.symbol, candidate.name)
    )


def _id_or_name_contains(*needles: str) -> Callable[[str, Candidate], bool]:
    def match(ticker: str, candidate: Candidate) -> bool:
        for text in (candidate.id.lower(), candidate.name.lower()):
            if text in PROTECTED_PROTOCOLS:
                continue
            if any(needle in text for needle in needles):
                return True
        return False

    return match


def _derivative_category(ticker: str, candidate: Candidate) -> bool:
    return any(_DERIVATIVE_CATEGORY_RE.search(cat) for cat in candidate.categories)


CANDIDATE_RULES: tuple[BanRule, ...] = (
    BanRule(
        "wrapped",
        _id_or_name_contains("wrapped", "wbtc", "weth", "wsteth"),
        relaxed_by="include_wrapped",
    ),
    BanRule(
        "pegged",
        _id_or_name_contains("peg", "pegged", "binance-peg"),
        relaxed_by="include_bridged",
    ),
    BanRule(
        "bridged",
        _id_or_name_contains(
            "bridged", "-wormhole", "wormhole-", "multichain-bridged",
            "anyswap-", "-anyswap", "synapse-bridged",
        ),
        relaxed_by="include_bridged",
    ),
    BanRule(
        "staked",
        _id_or_name_contains("staked", "restaked"),
        relaxed_by="include_staked",
    ),
    BanRule("derivative_category", _derivative_category, relaxed_by="include_wrapped"),
)


def matching_candidate_rules(candidate: Candidate) -> list[BanRule]:
    return [rule for rule in CANDIDATE_RULES if rule.match("", candidate)]


def looks_wrapped(candidate: Candidate) -> bool:
    """Whether any wrapped/pegged/bridged/staked rule matches the candidate."""
    return bool(matching_candidate_rules(candidate))


def blocked_by_heuristics(candidate: Candidate, flags: ResolveFlags) -> bool:
    """Matching rules the caller's flags do not relax."""
    if is_protected(candidate):
        return False
    for rule in matching_candidate_rules(candidate):
        if flags.force_exact:
            continue
        if rule.relaxed_by and getattr(flags, rule.relaxed_by):
            continue
        return True
    return False


LEARNING_RULES: tuple[BanRule, ...] = (
    BanRule(
        "wrapped_token",
        lambda t, c: t.startswith("w") and len(t) <= 5,
        relaxed_by="include_wrapped",
    ),
    BanRule(
        "staked_derivative",
        lambda t, c: (t.startswith("st") and len(t) <= 6)
        or _id_or_name_contains("staked")(t, c),
        relaxed_by="include_staked",
    ),
    BanRule(
        "stablecoin_ambiguous",
        lambda t, c: t in STABLE_TICKERS,
        relaxed_by="include_stablecoins",
    ),
    BanRule(
        "bridged_token",
        _id_or_name_contains("wormhole", "bridged", "pegged", "binance-peg", "wrapped"),
        relaxed_by="include_bridged",
    ),
    BanRule(
        "derivative_token",
        lambda t, c: "atoken" in c.id.lower() or "ctoken" in c.id.lower(),
        relaxed_by="include_wrapped",
    ),
    BanRule("single_letter_ambiguous", lambda t, c: len(t) == 1),
)


def check_learning_ban(
    ticker: str, candidate: Candidate, flags: ResolveFlags | None = None
) -> str | None:
    """Name of the first learning rule the mapping trips, or None.

    Caller flags skip the rules they relax; `force_exact` skips every rule
    that has a relaxing flag. Single letters are never relaxed.
    """
    if not ticker or not candidate.id:
        return "invalid_input"
    ticker = ticker.lower()
    for rule in LEARNING_RULES:
        if flags is not None and rule.relaxed_by and (
            flags.force_exact or getattr(flags, rule.relaxed_by)
        ):
            continue
        if rule.match(ticker, candidate):
            return rule.name
    return None
