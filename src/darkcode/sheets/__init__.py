"""Sheet source: CSV export fetching and decoding."""
