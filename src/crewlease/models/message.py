from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class MessageType(str, Enum):
    QUESTION = "question"
    INSIGHT = "insight"
    WARNING = "warning"
    HANDOFF = "handoff"
    REQUEST = "request"
    NOTIFICATION = "notification"
    QUERY = "query"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class MessageStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    READ = "read"
    PROCESSED = "processed"
    FAILED = "failed"


# Delivery order: lower rank is delivered first.
PRIORITY_RANK: dict[Priority, int] = {
    Priority.URGENT: 1,
    Priority.HIGH: 2,
    Priority.MEDIUM: 3,
    Priority.LOW: 4,
}


class AgentMessage(BaseModel):
    """A directed, typed message between two roles."""

    id: str
    from_agent: str
    to_agent: str
    message_type: MessageType
    subject: str
    content: str
    work_item_id: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    status: MessageStatus = MessageStatus.PENDING
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None
    is_dead_letter: bool = False
    created_at: datetime
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class MessageCreate(BaseModel):
    """Parameters accepted by ``MessageBus.send_with_retry``."""

    from_agent: str
    to_agent: str
    message_type: MessageType
    subject: str
    content: str
    work_item_id: Optional[str] = None
    priority: Priority = Priority.MEDIUM
