"""
Provider Daemon - marketplace resource provider.

Tails the marketplace ledger, creates and removes resources through pluggable
backends, force-closes agreements that ran out of balance, and answers
read-only queries about the provider's inventory over the pipe transport.
"""

__version__ = "0.1.0"

__all__ = [
    "abi",
    "backends",
    "chain_simulator",
    "config",
    "errors",
    "events",
    "ledger",
    "lifecycle",
    "pipe",
    "query",
    "server",
    "storage",
    "sweeper",
    "synchronizer",
    "web3_ledger",
]
