"""Exception types raised across the worker."""

from __future__ import annotations


class SubscriptionWorkerError(Exception):
    """Base class for errors raised by this package."""


class AnalysisTransportError(SubscriptionWorkerError):
    """The analysis service could not be reached or answered with a non-2xx."""

    def __init__(self, service: str, message: str, *, status_code: int | None = None):
        self.service = service
        self.message = message
        self.status_code = status_code
        super().__init__(f"Analysis service '{service}' failed: {message}")


class UnknownSubscriptionTypeError(SubscriptionWorkerError):
    def __init__(self, type_slug: str):
        self.type_slug = type_slug
        super().__init__(f"No processor registered for subscription type '{type_slug}'")


class SubscriptionNotFoundError(SubscriptionWorkerError):
    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription '{subscription_id}' not found")


class PublishError(SubscriptionWorkerError):
    """An event could not be delivered to the publish sink."""
