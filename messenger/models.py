from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field

from messenger.formatting import parse_image


class Profile(SQLModel):
    """
    Public identity of a user, stored in the `profiles` table.
    Shares its id with the Supabase auth user.
    """
    id: str
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    status: str = "offline"              # "online" or "offline"
    last_seen: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.display_name or self.username

    @property
    def online(self) -> bool:
        return self.status == "online"


class Message(SQLModel):
    """
    Single chat message. `content` is plain text or image markup.
    """
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime
    read_by: list[str] = Field(default_factory=list)
    sender: Optional[Profile] = None

    @classmethod
    def from_row(cls, row: dict) -> "Message":
        data = dict(row)
        sender = data.pop("profiles", None)
        if data.get("read_by") is None:
            data["read_by"] = []
        if sender:
            data["sender"] = Profile.model_validate(sender)
        return cls.model_validate(data)

    @property
    def image_url(self) -> Optional[str]:
        return parse_image(self.content)

    def is_read_by(self, user_id: str) -> bool:
        return user_id in self.read_by


class Participant(SQLModel):
    conversation_id: str
    user_id: str
    profile: Optional[Profile] = None

    @classmethod
    def from_row(cls, row: dict, conversation_id: str) -> "Participant":
        profile = row.get("profiles")
        return cls(
            conversation_id=row.get("conversation_id", conversation_id),
            user_id=row["user_id"],
            profile=Profile.model_validate(profile) if profile else None,
        )


class Conversation(SQLModel):
    """
    Direct (two-party) or group (named, multi-party) thread.
    """
    id: str
    is_group: bool = False
    name: Optional[str] = None
    last_message_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    participants: list[Participant] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict) -> "Conversation":
        data = dict(row)
        participants = data.pop("conversation_participants", None) or []
        messages = data.pop("messages", None) or []
        conversation = cls.model_validate(data)
        conversation.participants = [
            Participant.from_row(p, conversation.id) for p in participants
        ]
        conversation.messages = sorted(
            (Message.from_row(m) for m in messages),
            key=lambda m: m.created_at,
        )
        return conversation

    @property
    def member_ids(self) -> list[str]:
        return [p.user_id for p in self.participants]

    def peer(self, user_id: str) -> Optional[Profile]:
        """The other participant of a direct conversation."""
        for p in self.participants:
            if p.user_id != user_id:
                return p.profile
        return None

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def unread_count(self, user_id: str) -> int:
        return sum(
            1 for m in self.messages
            if m.sender_id != user_id and not m.is_read_by(user_id)
        )


class ChatRequest(SQLModel):
    """
    Invitation to a direct chat; accepting it opens the conversation.
    """
    id: str
    sender_id: str
    receiver_id: str
    status: str = "pending"              # "pending", "accepted" or "declined"
    created_at: Optional[datetime] = None
    sender: Optional[Profile] = None

    @classmethod
    def from_row(cls, row: dict) -> "ChatRequest":
        data = dict(row)
        sender = data.pop("sender", None)
        if sender:
            data["sender"] = Profile.model_validate(sender)
        return cls.model_validate(data)
