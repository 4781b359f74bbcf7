"""
Inbox page controller: conversation list, realtime updates and
creation of direct and group chats.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from messenger import repository
from messenger.auth import AppSession
from messenger.chat import InvalidConversation
from messenger.config import SEARCH_DEBOUNCE_SECONDS
from messenger.debounce import Debouncer
from messenger.formatting import preview, relative_time
from messenger.models import ChatRequest, Conversation, Message, Profile
from messenger.realtime import ChangeEvent, RealtimeFeed

logger = logging.getLogger(__name__)

MIN_GROUP_MEMBERS = 2


class GroupTooSmall(ValueError):
    pass


@dataclass
class InboxItem:
    conversation_id: str
    title: str
    avatar_url: Optional[str]
    preview: str
    time_label: str
    unread: int
    online: bool
    is_group: bool

    def matches(self, query: str) -> bool:
        query = query.strip().lower()
        return not query or query in self.title.lower() or query in self.preview.lower()


class InboxController:

    def __init__(self, session: AppSession):
        self.session = session
        self.conversations: dict[str, Conversation] = {}
        self._missing: set[str] = set()
        self.user_search = Debouncer(SEARCH_DEBOUNCE_SECONDS, self._search_profiles)

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
        conversations = repository.list_conversations(self.client, self.user_id)
        self.conversations = {c.id: c for c in conversations}
        self._missing.clear()

    def ordered(self) -> List[Conversation]:
        return sorted(
            self.conversations.values(),
            key=_activity,
            reverse=True,
        )

    def items(self, query: str = "", now: Optional[datetime] = None) -> List[InboxItem]:
        items = [self._item(c, now) for c in self.ordered()]
        return [i for i in items if i.matches(query)]

    def _item(self, conversation: Conversation, now: Optional[datetime]) -> InboxItem:
        last = conversation.last_message
        if conversation.is_group:
            title = conversation.name or "Group chat"
            avatar_url, online = None, False
        else:
            peer = conversation.peer(self.user_id)
            title = peer.name if peer else "Unknown user"
            avatar_url = peer.avatar_url if peer else None
            online = bool(peer and peer.online)

        text = preview(last.content) if last else "No messages yet"
        if last and conversation.is_group and last.sender_id == self.user_id:
            text = f"You: {text}"

        return InboxItem(
            conversation_id=conversation.id,
            title=title,
            avatar_url=avatar_url,
            preview=text,
            time_label=relative_time(last.created_at if last else conversation.last_message_at, now),
            unread=conversation.unread_count(self.user_id),
            online=online,
            is_group=conversation.is_group,
        )

    # -----------------------------
    # Realtime
    # -----------------------------
    def subscribe(self, feed: RealtimeFeed):
        feed.subscribe("inbox-messages", table="messages", event="INSERT")

    def apply(self, event: ChangeEvent) -> bool:
        """
        Fold a message insert into the list. Returns True when the list
        changed; inserts for unknown conversations are queued for
        `refresh_missing`.
        """
        if event.table != "messages" or event.type != "INSERT":
            return False

        message = Message.from_row(event.record)
        conversation = self.conversations.get(message.conversation_id)
        if conversation is None:
            self._missing.add(message.conversation_id)
            return False

        if any(m.id == message.id for m in conversation.messages):
            return False
        conversation.messages.append(message)
        conversation.messages.sort(key=lambda m: m.created_at)
        conversation.last_message_at = max(
            filter(None, [conversation.last_message_at, message.created_at])
        )
        return True

    def apply_all(self, events: Iterable[ChangeEvent]) -> bool:
        changed = False
        for event in events:
            changed = self.apply(event) or changed
        return self.refresh_missing() or changed

    def refresh_missing(self) -> bool:
        """Fetch conversations first seen through a realtime insert."""
        changed = False
        for conversation_id in list(self._missing):
            self._missing.discard(conversation_id)
            try:
                conversation = repository.get_conversation(self.client, conversation_id)
            except Exception:
                logger.exception("Could not load conversation %s", conversation_id)
                continue
            if conversation and self.user_id in conversation.member_ids:
                self.conversations[conversation.id] = conversation
                changed = True
        return changed

    # -----------------------------
    # New chats
    # -----------------------------
    def _search_profiles(self, query: str) -> List[Profile]:
        return repository.search_profiles(self.client, query, exclude_id=self.user_id)

    def search_users(self, query: str) -> List[Profile]:
        return self.user_search.query(query)

    def start_direct_chat(self, other_id: str) -> str:
        """
        Open the existing one-to-one conversation with `other_id`,
        creating it when there is none.
        """
        if other_id == self.user_id:
            raise InvalidConversation("You cannot start a chat with yourself.")

        existing = repository.find_direct_conversation(self.client, self.user_id, other_id)
        if existing:
            return existing

        conversation_id = repository.create_conversation(
            self.client, [self.user_id, other_id], is_group=False
        )
        logger.info("Created direct conversation %s", conversation_id)
        return conversation_id

    def start_group_chat(self, member_ids: Iterable[str], name: Optional[str] = None,
                         member_profiles: Iterable[Profile] = ()) -> str:
        members = [self.user_id]
        for uid in member_ids:
            if uid not in members:
                members.append(uid)

        if len(members) < MIN_GROUP_MEMBERS:
            raise GroupTooSmall("Pick at least one other person for a group chat.")

        name = (name or "").strip() or _default_group_name(self.session.profile, member_profiles)
        conversation_id = repository.create_conversation(
            self.client, members, is_group=True, name=name
        )
        logger.info("Created group %s with %d members", conversation_id, len(members))
        return conversation_id

    # -----------------------------
    # Chat requests
    # -----------------------------
    def pending_requests(self) -> List[ChatRequest]:
        return repository.pending_chat_requests(self.client, self.user_id)

    def request_chat(self, other_id: str) -> ChatRequest:
        """Invite `other_id` to a direct chat; repeated invites reuse the pending one."""
        if other_id == self.user_id:
            raise InvalidConversation("You cannot send a chat request to yourself.")

        existing = repository.pending_chat_request(self.client, self.user_id, other_id)
        if existing:
            return existing
        return repository.insert_chat_request(self.client, self.user_id, other_id)

    def accept_request(self, request_id: str) -> str:
        """Mark the request accepted and open the direct chat with its sender."""
        request = repository.answer_chat_request(
            self.client, request_id, self.user_id, "accepted"
        )
        if request is None:
            raise InvalidConversation("This chat request is no longer pending.")
        return self.start_direct_chat(request.sender_id)

    def decline_request(self, request_id: str) -> bool:
        request = repository.answer_chat_request(
            self.client, request_id, self.user_id, "declined"
        )
        return request is not None


def _activity(conversation: Conversation):
    last = conversation.last_message
    stamps = [s for s in (conversation.last_message_at, last.created_at if last else None) if s]
    return max(stamps).timestamp() if stamps else 0.0


def _default_group_name(me: Profile, others: Iterable[Profile]) -> str:
    names = [me.name] + [p.name for p in others]
    if len(names) > 3:
        return ", ".join(names[:3]) + f" +{len(names) - 3}"
    return ", ".join(names)
