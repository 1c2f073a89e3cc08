"""Business logic: resolvers, price batching, upstream providers.

Submodules are imported directly; the repositories package depends on
``services.canonical`` so nothing is re-exported here.
"""
