from .webhook import MatrixWebhookNotifier, NotificationSink

__all__ = ["MatrixWebhookNotifier", "NotificationSink"]
