"""Outbound collaborators: webhooks, catalog, notifier and velocity counter."""
from .catalog import CatalogReader
from .notifier import LoggingNotifier, Notifier, RecordingNotifier
from .velocity import VelocityTracker
from .webhook_dispatcher import (
    DeliveryResult,
    WebhookDispatcher,
    build_envelope,
    normalize_events,
    sign,
    verify,
)

__all__ = [
    "CatalogReader",
    "DeliveryResult",
    "LoggingNotifier",
    "Notifier",
    "RecordingNotifier",
    "VelocityTracker",
    "WebhookDispatcher",
    "build_envelope",
    "normalize_events",
    "sign",
    "verify",
]
