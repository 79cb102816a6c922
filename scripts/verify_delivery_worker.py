#!/usr/bin/env python3
"""
הכנסת הודעת תמונה אחת לתור לבדיקת ה-delivery worker מקצה לקצה.

הרצה (מתוך תיקיית הפרויקט):
    python scripts/verify_delivery_worker.py --media-url https://bucket.s3.amazonaws.com/a.jpg

    # שיחה מסוימת + הרצת איטרציה אחת של ה-worker מיד
    python scripts/verify_delivery_worker.py --conversation-id <id> --media-url <url> --run

בלי --conversation-id נבחרת שיחת WhatsApp הראשונה של דייר שמוגדר לשליחה.
"""
import argparse
import asyncio
import sys
from pathlib import Path

# הוספת תיקיית הפרויקט ל-path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy import select  # noqa: E402

from app.db.database import get_task_session  # noqa: E402
from app.db.models.conversation import Conversation  # noqa: E402
from app.db.models.vendor import Vendor  # noqa: E402
from app.domain.services.message_queue_service import MessageQueueService  # noqa: E402


async def _find_conversation(db, conversation_id: str | None) -> Conversation | None:
    query = select(Conversation).where(Conversation.channel == "whatsapp")
    if conversation_id:
        query = query.where(Conversation.id == conversation_id)
    else:
        query = (
            query.join(Vendor, Vendor.id == Conversation.vendor_id)
            .where(
                Vendor.whatsapp_phone_number_id.isnot(None),
                Vendor.whatsapp_access_token.isnot(None),
            )
            .order_by(Conversation.created_at.desc())
        )
    result = await db.execute(query.limit(1))
    return result.scalars().first()


async def verify(conversation_id: str | None, media_url: str, caption: str, run: bool) -> int:
    print("🧪 Verifying WhatsApp delivery worker...")

    async with get_task_session() as db:
        conversation = await _find_conversation(db, conversation_id)
        if conversation is None:
            print("❌ No WhatsApp conversation found")
            return 1

        message = await MessageQueueService(db).queue_image_message(
            vendor_id=conversation.vendor_id,
            conversation_id=conversation.id,
            media_url=media_url,
            caption=caption,
        )
        message_id = message.id

    print(f"✅ Message queued: {message_id}")

    if run:
        from app.workers.delivery_worker import DeliveryWorker

        outcome = await DeliveryWorker().run_once()
        print(f"🚚 Worker iteration: {outcome.value}")

    print("🎯 Verification complete")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Enqueue a test image message")
    parser.add_argument("--conversation-id", default=None)
    parser.add_argument("--media-url", required=True)
    parser.add_argument("--caption", default="Worker verification test")
    parser.add_argument("--run", action="store_true", help="run one worker iteration after queueing")
    args = parser.parse_args()

    return asyncio.run(verify(args.conversation_id, args.media_url, args.caption, args.run))


if __name__ == "__main__":
    sys.exit(main())
