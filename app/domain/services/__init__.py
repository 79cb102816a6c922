"""
Domain Services
"""
from app.domain.services.message_queue_service import MessageQueueService

__all__ = [
    "MessageQueueService",
]
