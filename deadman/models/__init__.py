from .user import User
from .successor import Successor
from .activity_record import ActivityRecord
from .inactivity_settings import InactivitySettings
from .handover_process import HandoverProcess
from .successor_notification import SuccessorNotification
from .notification_delivery import NotificationDelivery
from .checkin_token import CheckInToken
from .system_status import SystemStatusRecord

__all__ = [
    "User",
    "Successor",
    "ActivityRecord",
    "InactivitySettings",
    "HandoverProcess",
    "SuccessorNotification",
    "NotificationDelivery",
    "CheckInToken",
    "SystemStatusRecord",
]
