from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class NotificationPriority(str, Enum):
    NORMAL = "normal"
    HIGH   = "high"


class Notification(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    recipient_id:    str
    recipient_type:  str = "client"
    type:            str                      # "delivery_accepted", "delivery_delivered", ...
    title:           str
    message:         str
    # Contextual link
    delivery_id:     Optional[str] = None
    status:          Optional[str] = None
    action_required: bool = False
    priority:        NotificationPriority = NotificationPriority.NORMAL
    category:        str = "delivery_update"
    is_read:         bool = False
    # Timestamps
    created_at:      Optional[datetime] = None
    read_at:         Optional[datetime] = None
