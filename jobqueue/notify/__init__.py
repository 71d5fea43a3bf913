"""
Notification delivery.
"""

from jobqueue.notify.webhook import DeliveryResult, WebhookNotifier

__all__ = ["DeliveryResult", "WebhookNotifier"]
