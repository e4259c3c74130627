"""Exceptions raised by the optimization services."""

from __future__ import annotations


class NotFoundError(LookupError):
    """Raised when an order, driver, batch or route does not exist."""


class BatchValidationError(ValueError):
    """Raised when a set of orders cannot be batched for a driver."""


class BatchStateError(ValueError):
    """Raised when a batch lifecycle transition is not allowed."""
