"""Exceptions raised by order-service.

"Not found" is deliberately absent: a missing replica record is an ordinary
outcome (`None` from a store, an invalid `ValidationOutcome` from validation).
"""

from __future__ import annotations


class OrderingError(Exception):
    """Base class for the service's own exceptions."""


class InvalidDraftError(OrderingError, ValueError):
    """The client-supplied draft cannot become an order (empty, bad quantity)."""


class InvalidOutcomeError(OrderingError, RuntimeError):
    """An order was assembled from a validation outcome that is not valid.

    Callers must check `outcome.valid` first; reaching this is a bug.
    """


class ReplicaUnavailableError(OrderingError):
    """The replica store could not be reached. Transient; the consumer retries."""
