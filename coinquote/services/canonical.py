"""Static ticker tables: canonical overrides, aliases and seed data.

The canonical table always wins over search and learning. It is the escape
hatch for symbols the scoring heuristic gets wrong, most notably single
letters that collide with dozens of unrelated assets.
"""

from __future__ import annotations

from typing import NamedTuple


CANONICAL: dict[str, str] = {
    # Majors
    "btc": "bitcoin",
    "xbt": "bitcoin",
    "eth": "ethereum",
    "sol": "solana",
    "link": "chainlink",
    "ada": "cardano",
    "avax": "avalanche-2",
    "bnb": "binancecoin",
    "doge": "dogecoin",
    "trx": "tron",
    "pol": "polygon-ecosystem-token",
    "matic": "polygon-ecosystem-token",
    "ltc": "litecoin",
    "uni": "uniswap",
    "arb": "arbitrum",
    "op": "optimism",
    "ldo": "lido-dao",
    "dot": "polkadot",
    "atom": "cosmos",
    "xrp": "ripple",
    "algo": "algorand",
    "near": "near",
    "ftm": "fantom",
    "xlm": "stellar",
    "vet": "vechain",
    "icp": "internet-computer",
    "fil": "filecoin",
    "apt": "aptos",
    "sui": "sui",
    "sei": "sei-network",
    "inj": "injective-protocol",
    "tia": "celestia",
    # Protocol tokens whose names contain bridge keywords
    "syn": "synapse-2",
    "multi": "multichain",
    "any": "anyswap",
    # Symbols the search heuristic mis-ranks
    "sd": "stader",
    "bio": "bio-protocol",
    "spx": "spx6900",
    "pendle": "pendle",
    "cvx": "convex-finance",
    "omni": "omni-network",
    "mavia": "heroes-of-mavia",
    "pengu": "pudgy-penguins",
    # Legit tokens the learning ban rules would otherwise reject
    "wif": "dogwifcoin",
    "wld": "worldcoin-wld",
    "woo": "woo-network",
    "stx": "blockstack",
    "strk": "starknet",
    # Single letters
    "w": "wormhole",
    "x": "x",
    "z": "zcash",
    "t": "threshold-network-token",
    "n": "numeraire",
    "s": "synthetix-network-token",
    "r": "revain",
    "q": "quant-network",
    "p": "protocol",
    "o": "origin-protocol",
    "m": "mirror-protocol",
    "l": "chainlink",
    "k": "kyber-network-crystal",
    "j": "jupiter",
    "i": "internet-computer",
    "h": "helium",
    "g": "the-graph",
    "f": "fetch-ai",
    "e": "enjincoin",
    "d": "dogecoin",
    "c": "celsius-degree-token",
    "b": "bancor",
    "a": "aave",
    "u": "uniswap",
    "v": "vechain",
    "y": "yearn-finance",
}

# Common names and confusions mapped onto tickers
ALIASES: dict[str, str] = {
    "bitcoin": "btc",
    "ethereum": "eth",
    "solana": "sol",
    "cardano": "ada",
    "polkadot": "dot",
    "avalanche": "avax",
    "dogecoin": "doge",
    "uniswap": "uni",
    "chainlink": "link",
    "lido": "ldo",
}


class SeedMapping(NamedTuple):
    ticker: str
    canonical_id: str
    hit_count: int


class SeedBan(NamedTuple):
    ticker: str
    canonical_id: str
    reason: str


# High-confidence mappings preloaded with no TTL
WARMUP_MAPPINGS: tuple[SeedMapping, ...] = (
    SeedMapping("btc", "bitcoin", 1000),
    SeedMapping("eth", "ethereum", 1000),
    SeedMapping("sol", "solana", 800),
    SeedMapping("ada", "cardano", 500),
    SeedMapping("dot", "polkadot", 400),
    SeedMapping("avax", "avalanche-2", 400),
    SeedMapping("atom", "cosmos", 350),
    SeedMapping("algo", "algorand", 300),
    SeedMapping("uni", "uniswap", 300),
    SeedMapping("link", "chainlink", 350),
    SeedMapping("aave", "aave", 250),
    SeedMapping("comp", "compound-governance-token", 200),
    SeedMapping("mkr", "maker", 200),
    SeedMapping("crv", "curve-dao-token", 200),
    SeedMapping("doge", "dogecoin", 600),
    SeedMapping("shib", "shiba-inu", 400),
    SeedMapping("pepe", "pepe", 300),
    SeedMapping("bnb", "binancecoin", 200),
    SeedMapping("okb", "okb", 150),
)

DEFAULT_BANS: tuple[SeedBan, ...] = (
    SeedBan("wbtc", "wrapped-bitcoin", "wrapped_token"),
    SeedBan("weth", "weth", "wrapped_token"),
    SeedBan("wsol", "wrapped-solana", "wrapped_token"),
    SeedBan("usdc", "usd-coin", "stablecoin_ambiguous"),
    SeedBan("usdt", "tether", "stablecoin_ambiguous"),
    SeedBan("dai", "dai", "stablecoin_ambiguous"),
    SeedBan("busd", "binance-usd", "stablecoin_ambiguous"),
    SeedBan("steth", "staked-ether", "staked_derivative"),
    SeedBan("reth", "rocket-pool-eth", "staked_derivative"),
)


def lookup_canonical(ticker: str) -> str | None:
    """Canonical id for a ticker, or None."""
    return CANONICAL.get(ticker.strip().lower())


def apply_alias(ticker: str) -> str:
    key = ticker.strip().lower()
    return ALIASES.get(key, key)
