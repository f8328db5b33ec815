"""Chat platform transport interface"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional
import logging

logger = logging.getLogger(__name__)


@dataclass
class Author:
    """Sender of a message"""
    id: str
    username: str = ""
    avatar: Optional[str] = None


@dataclass
class Attachment:
    """Binary attached to a message"""
    url: str
    filename: str = ""
    size: int = 0
    proxy_url: Optional[str] = None


@dataclass
class Message:
    """Message as seen by the transfer core"""
    id: str
    channel_id: str
    content: str = ""
    attachments: List[Attachment] = field(default_factory=list)
    author: Optional[Author] = None


MessageCreatedHandler = Callable[[Message], None]
MessageDeletedHandler = Callable[[str, str], None]  # (channel_id, message_id)


class ChatTransport(ABC):
    """Operations the transfer core needs from the chat platform.

    Implementations provide the network calls; event fan-out for live
    discovery is shared here.
    """

    def __init__(self):
        self._created_handlers: List[MessageCreatedHandler] = []
        self._deleted_handlers: List[MessageDeletedHandler] = []

    @abstractmethod
    async def send_attachment(self, data: bytes, filename: str, channel_id: str) -> str:
        """Upload binary content, return a reference usable in post_message"""

    @abstractmethod
    async def post_message(self, channel_id: str, content: str, attachment_ref: str,
                           filename: str, size: int) -> Message:
        """Post a carrier message with one previously uploaded attachment"""

    @abstractmethod
    async def fetch_bytes(self, url: str) -> Optional[bytes]:
        """Fetch attachment content, None when nothing could be retrieved"""

    @abstractmethod
    async def list_messages(self, channel_id: str, limit: int,
                            before: Optional[str] = None) -> List[Message]:
        """List channel history, newest first, strictly older than `before`"""

    async def close(self):
        """Release network resources"""

    def on_message_created(self, handler: MessageCreatedHandler) -> Callable[[], None]:
        self._created_handlers.append(handler)
        return lambda: self._created_handlers.remove(handler)

    def on_message_deleted(self, handler: MessageDeletedHandler) -> Callable[[], None]:
        self._deleted_handlers.append(handler)
        return lambda: self._deleted_handlers.remove(handler)

    def dispatch_created(self, message: Message):
        for handler in list(self._created_handlers):
            try:
                handler(message)
            except Exception as e:
                logger.error(f"Message created handler failed: {e}", exc_info=True)

    def dispatch_deleted(self, channel_id: str, message_id: str):
        for handler in list(self._deleted_handlers):
            try:
                handler(channel_id, message_id)
            except Exception as e:
                logger.error(f"Message deleted handler failed: {e}", exc_info=True)
