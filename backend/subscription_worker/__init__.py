"""Subscription processing worker: claims due subscriptions and turns analysis matches into notifications."""

__version__ = "0.1.0"
