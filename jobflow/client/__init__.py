from jobflow.client.conversations import ConversationSynchronizer, TypingDebouncer
from jobflow.client.event_bus import ConnectionState, EventBus
from jobflow.client.jobs import JobWorkflowClient
from jobflow.client.notifications import NotificationReconciler, notification_action
from jobflow.client.rest import HttpMarketplaceApi
from jobflow.client.session import ClientSession, ClientSettings
from jobflow.client.transports import InProcessTransport, PushTransport, WebSocketTransport, realtime_url

__all__ = [
    "ClientSession",
    "ClientSettings",
    "ConnectionState",
    "ConversationSynchronizer",
    "EventBus",
    "HttpMarketplaceApi",
    "InProcessTransport",
    "JobWorkflowClient",
    "NotificationReconciler",
    "PushTransport",
    "TypingDebouncer",
    "WebSocketTransport",
    "notification_action",
    "realtime_url",
]
