"""Library circulation engine: checkouts, returns, renewals, bans and loan policy."""
