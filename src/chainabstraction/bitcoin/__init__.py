"""Bitcoin-family scripts, transactions, wallet and swap providers."""
