from clubhub.notifications.models import Channel, Notification, NotificationStatus
from clubhub.notifications.producer import NotificationProducer
from clubhub.notifications.recipients import DEFERRED, EVERYONE, Direct, Everyone, Group
from clubhub.notifications.worker import NotificationWorker

__all__ = [
    "Channel",
    "DEFERRED",
    "Direct",
    "EVERYONE",
    "Everyone",
    "Group",
    "Notification",
    "NotificationProducer",
    "NotificationStatus",
    "NotificationWorker",
]
