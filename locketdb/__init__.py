"""SQL-backed locks and presences with TTL expiration, config loading and a test CA."""

__version__ = "0.1.0"
__all__ = ["lockdb", "config", "expiration", "certauthority"]