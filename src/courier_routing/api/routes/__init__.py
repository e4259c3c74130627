"""Route group exports."""

from . import batches, health, performance, records, reoptimization, routes

__all__ = ["batches", "health", "performance", "records", "reoptimization", "routes"]
