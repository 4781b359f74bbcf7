"""
Chat page controller.

Holds one conversation's messages keyed by id and folds realtime
inserts and read-receipt updates into them.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Union

from messenger import repository
from messenger.auth import AppSession, get_profile
from messenger.config import READ_RECEIPT_RETRIES
from messenger.formatting import clock, date_label, image_markup, relative_time
from messenger.models import Conversation, Message, Profile
from messenger.realtime import ChangeEvent, RealtimeFeed

logger = logging.getLogger(__name__)


class InvalidConversation(ValueError):
    pass


@dataclass
class ChatHeader:
    title: str
    subtitle: str
    avatar_url: Optional[str]
    online: bool
    is_group: bool
    member_count: int


@dataclass
class DateSeparator:
    label: str


@dataclass
class MessageRow:
    message_id: str
    mine: bool
    sender_name: str
    avatar_url: Optional[str]
    text: Optional[str]
    image_url: Optional[str]
    time: str
    read: bool


TimelineRow = Union[DateSeparator, MessageRow]


class ChatController:

    def __init__(self, session: AppSession, conversation_id: Optional[str]):
        self.session = session
        self.conversation_id = conversation_id
        self.conversation: Optional[Conversation] = None
        self.messages: dict[str, Message] = {}
        self.profiles: dict[str, Profile] = {session.user_id: session.profile}

    @property
    def client(self):
        return self.session.client

    @property
    def user_id(self) -> str:
        return self.session.user_id

    # -----------------------------
    # Loading
    # -----------------------------
    def load(self):
        if not self.conversation_id:
            raise InvalidConversation("No conversation selected.")

        conversation = repository.get_conversation(self.client, self.conversation_id)
        if conversation is None or self.user_id not in conversation.member_ids:
            raise InvalidConversation(f"Conversation {self.conversation_id} not found.")

        self.conversation = conversation
        for p in conversation.participants:
            if p.profile:
                self.profiles[p.user_id] = p.profile
        self.messages = {m.id: m for m in conversation.messages}
        self.mark_all_read()

    def ordered(self) -> List[Message]:
        return sorted(self.messages.values(), key=lambda m: m.created_at)

    def header(self, now: Optional[datetime] = None) -> ChatHeader:
        conversation = self.conversation
        count = len(conversation.participants)
        if conversation.is_group:
            return ChatHeader(
                title=conversation.name or "Group chat",
                subtitle=f"{count} members",
                avatar_url=None,
                online=False,
                is_group=True,
                member_count=count,
            )

        peer = conversation.peer(self.user_id)
        if peer is None:
            return ChatHeader("Unknown user", "", None, False, False, count)
        if peer.online:
            subtitle = "Online"
        elif peer.last_seen:
            subtitle = f"Last seen {relative_time(peer.last_seen, now)}"
        else:
            subtitle = "Offline"
        return ChatHeader(
            title=peer.name,
            subtitle=subtitle,
            avatar_url=peer.avatar_url,
            online=peer.online,
            is_group=False,
            member_count=count,
        )

    def timeline(self, now: Optional[datetime] = None) -> List[TimelineRow]:
        """Messages in time order with a separator before each new day."""
        rows: List[TimelineRow] = []
        last_label = None
        for message in self.ordered():
            label = date_label(message.created_at, now)
            if label != last_label:
                rows.append(DateSeparator(label))
                last_label = label
            rows.append(self._row(message, now))
        return rows

    def _row(self, message: Message, now: Optional[datetime]) -> MessageRow:
        sender = message.sender or self.profiles.get(message.sender_id)
        image_url = message.image_url
        return MessageRow(
            message_id=message.id,
            mine=message.sender_id == self.user_id,
            sender_name=sender.name if sender else "Unknown",
            avatar_url=sender.avatar_url if sender else None,
            text=None if image_url else message.content,
            image_url=image_url,
            time=clock(message.created_at, now),
            read=self.is_read(message),
        )

    def is_read(self, message: Message) -> bool:
        """Read indicator: somebody other than the sender has read it."""
        return any(uid != message.sender_id for uid in message.read_by)

    # -----------------------------
    # Read receipts
    # -----------------------------
    def mark_read(self, message: Message) -> Message:
        """
        Add the current user to `read_by` exactly once. Retries the
        compare-and-set when another reader updated the list first.
        """
        for _ in range(READ_RECEIPT_RETRIES):
            if message.is_read_by(self.user_id):
                return message
            updated = repository.update_read_by(
                self.client,
                message.id,
                previous=message.read_by,
                read_by=message.read_by + [self.user_id],
            )
            if updated is not None:
                message.read_by = updated.read_by
                return message

            fresh = repository.get_message(self.client, message.id)
            if fresh is None:
                return message
            message.read_by = fresh.read_by
        logger.warning("Gave up marking %s read after %d attempts", message.id, READ_RECEIPT_RETRIES)
        return message

    def mark_all_read(self) -> int:
        """Mark other participants' unread messages one at a time."""
        marked = 0
        for message in self.ordered():
            if message.sender_id == self.user_id or message.is_read_by(self.user_id):
                continue
            try:
                self.mark_read(message)
                marked += 1
            except Exception:
                logger.exception("Could not mark message %s read", message.id)
        return marked

    # -----------------------------
    # Realtime
    # -----------------------------
    def subscribe(self, feed: RealtimeFeed):
        scope = f"conversation_id=eq.{self.conversation_id}"
        feed.subscribe(f"chat-{self.conversation_id}-insert", table="messages",
                       event="INSERT", filter=scope)
        feed.subscribe(f"chat-{self.conversation_id}-update", table="messages",
                       event="UPDATE", filter=scope)

    def apply(self, event: ChangeEvent) -> bool:
        if event.table != "messages" or not event.record:
            return False
        if event.record.get("conversation_id") != self.conversation_id:
            return False

        if event.type == "INSERT":
            return self._apply_insert(Message.from_row(event.record))
        if event.type == "UPDATE":
            known = self.messages.get(event.record.get("id"))
            if known is None:
                return False
            read_by = event.record.get("read_by") or []
            if read_by == known.read_by:
                return False
            known.read_by = list(read_by)
            return True
        return False

    def apply_all(self, events) -> bool:
        changed = False
        for event in events:
            changed = self.apply(event) or changed
        return changed

    def _apply_insert(self, message: Message) -> bool:
        if message.id in self.messages:
            return False

        message.sender = self._sender(message.sender_id)
        self.messages[message.id] = message
        if message.sender_id != self.user_id:
            try:
                self.mark_read(message)
            except Exception:
                logger.exception("Could not mark message %s read", message.id)
        return True

    def _sender(self, user_id: str) -> Optional[Profile]:
        if user_id not in self.profiles:
            try:
                profile = get_profile(self.client, user_id)
            except Exception:
                logger.exception("Could not load profile %s", user_id)
                return None
            if profile:
                self.profiles[user_id] = profile
        return self.profiles.get(user_id)

    # -----------------------------
    # Sending
    # -----------------------------
    def send_text(self, text: str) -> Optional[Message]:
        """Send trimmed text. Empty or whitespace-only input sends nothing."""
        content = (text or "").strip()
        if not content:
            return None
        return self._post(content)

    def send_image(self, data: bytes, filename: str,
                   content_type: Optional[str] = None) -> Message:
        url = repository.upload_image(
            self.client, self.conversation_id, data, filename, content_type
        )
        return self._post(image_markup(url))

    def _post(self, content: str) -> Message:
        message = repository.insert_message(
            self.client, self.conversation_id, self.user_id, content
        )
        try:
            repository.touch_conversation(
                self.client, self.conversation_id, message.created_at.isoformat()
            )
        except Exception:
            logger.exception("Could not bump conversation %s", self.conversation_id)

        try:
            profile = get_profile(self.client, self.user_id)
        except Exception:
            logger.exception("Could not refresh profile %s", self.user_id)
            profile = None
        if profile:
            self.profiles[self.user_id] = profile
        message.sender = self.profiles.get(self.user_id)
        self.messages.setdefault(message.id, message)
        return message
