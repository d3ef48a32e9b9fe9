"""Core infrastructure: configuration, logging, store, coordination, rate limiting."""
