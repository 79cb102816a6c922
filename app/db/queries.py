"""
Message Query Helpers — eager loading של כל מה שה-worker צריך לשליחה אחת.

מונע lazy loading (שלא עובד ב-AsyncSession) ו-N+1 queries:
    result = await db.execute(
        select(Message)
        .where(Message.id == message_id)
        .options(*message_with_relations())
    )

הערה חשובה: אסור לשלב את ה-options האלה עם .with_for_update() —
ה-claim נעשה ב-UPDATE מותנה ולא בנעילת שורה.
"""
from typing import List

from sqlalchemy.orm import Load, joinedload, selectinload

from app.db.models.conversation import Conversation
from app.db.models.message import Message


def message_with_relations() -> List[Load]:
    """vendor, conversation -> lead, media, deliveries."""
    return [
        joinedload(Message.vendor),
        joinedload(Message.conversation).joinedload(Conversation.lead),
        selectinload(Message.media),
        selectinload(Message.deliveries),
    ]
