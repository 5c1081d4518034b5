from datetime import datetime
from typing import Dict, List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    participants: List[str]
    # sorted participants joined with "," (unique index)
    participantKey: str
    lastMessage: Optional[str]
    # per-participant unread counters (user_id -> count)
    unreadCount: Dict[str, int]
    createdAt: datetime
    updatedAt: datetime
