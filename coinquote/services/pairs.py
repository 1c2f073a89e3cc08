"""Trading pair shorthand parsing (btcusdt, eth/usdc, ondo-usdt, xrp:usdt)."""

from __future__ import annotations

import re
from typing import NamedTuple


QUOTES: tuple[str, ...] = (
    "usdt", "usdc", "busd", "fdusd", "tusd", "dai", "pyusd", "gusd", "usde",
    "usdp", "usdd", "usdj", "gho", "crvusd", "lusd", "eurt", "eurc", "xsgd",
)

# Lazy base so the shortest base that leaves a whole quote symbol wins.
# The quote is anchored at the end, which keeps "susdt" from splitting.
_PAIR_RE = re.compile(
    rf"^([a-z0-9._-]{{2,}}?)[/:-]?({'|'.join(QUOTES)})$",
    re.IGNORECASE,
)


class Pair(NamedTuple):
    base: str
    quote: str


def parse_pair(text: str) -> Pair | None:
    """Split `<base><quote>` shorthand, or None when the input is not a pair."""
    candidate = re.sub(r"\s+", "", text.strip().lower())
    match = _PAIR_RE.match(candidate)
    if not match:
        return None

    base = match.group(1).strip("._-/:")
    if len(base) < 2:
        return None
    return Pair(base=base, quote=match.group(2).lower())
