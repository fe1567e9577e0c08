"""Chain abstraction client for cross-chain atomic swaps."""

__version__ = "0.1.0"
