from .base import Base
from .notification import NotificationLog, InAppNotification, UserPreferenceRecord

__all__ = [
    'Base',
    'NotificationLog',
    'InAppNotification',
    'UserPreferenceRecord',
]
