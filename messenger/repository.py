from datetime import datetime, timezone
from typing import List, Optional

from supabase import Client

from messenger.config import (
    CONVERSATION_MESSAGE_LIMIT,
    STORAGE_BUCKET,
    USER_SEARCH_LIMIT,
)
from messenger.models import ChatRequest, Conversation, Message, Profile

CONVERSATION_SELECT = (
    "*, "
    "conversation_participants(user_id, profiles(*)), "
    "messages(id, conversation_id, sender_id, content, created_at, read_by)"
)
MESSAGE_SELECT = "*, profiles(*)"
CHAT_REQUEST_SELECT = "*, sender:profiles!chat_requests_sender_id_fkey(*)"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _array_literal(values: List[str]) -> str:
    return "{" + ",".join(values) + "}"


# -----------------------------
# Conversations
# -----------------------------
def conversation_ids_for(client: Client, user_id: str) -> List[str]:
    """
    Return the ids of every conversation the user participates in.
    """
    result = (
        client.table("conversation_participants")
        .select("conversation_id")
        .eq("user_id", user_id)
        .execute()
    )
    return [r["conversation_id"] for r in result.data]


def list_conversations(client: Client, user_id: str) -> List[Conversation]:
    """
    Conversations of a user with participants and messages expanded.
    Newest activity first.
    """
    ids = conversation_ids_for(client, user_id)
    if not ids:
        return []

    result = (
        client.table("conversations")
        .select(CONVERSATION_SELECT)
        .in_("id", ids)
        .order("last_message_at", desc=True)
        .execute()
    )
    return [Conversation.from_row(r) for r in result.data]


def get_conversation(client: Client, conversation_id: str) -> Optional[Conversation]:
    result = (
        client.table("conversations")
        .select(CONVERSATION_SELECT)
        .eq("id", conversation_id)
        .limit(1)
        .execute()
    )
    if not result.data:
        return None

    conversation = Conversation.from_row(result.data[0])
    conversation.messages = conversation.messages[-CONVERSATION_MESSAGE_LIMIT:]
    return conversation


def find_direct_conversation(client: Client, user_id: str, other_id: str) -> Optional[str]:
    """
    Return the id of a non-group conversation shared by both users.
    """
    mine = conversation_ids_for(client, user_id)
    if not mine:
        return None

    shared = (
        client.table("conversation_participants")
        .select("conversation_id")
        .in_("conversation_id", mine)
        .eq("user_id", other_id)
        .execute()
    )
    candidates = [r["conversation_id"] for r in shared.data]
    if not candidates:
        return None

    direct = (
        client.table("conversations")
        .select("id")
        .in_("id", candidates)
        .eq("is_group", False)
        .limit(1)
        .execute()
    )
    return direct.data[0]["id"] if direct.data else None


def create_conversation(client: Client, member_ids: List[str], is_group: bool,
                        name: Optional[str] = None) -> str:
    """
    Insert a conversation and one participant row per member.
    """
    now = _now()
    result = (
        client.table("conversations")
        .insert({
            "is_group": is_group,
            "name": name,
            "last_message_at": now,
        })
        .execute()
    )
    conversation_id = result.data[0]["id"]

    client.table("conversation_participants").insert([
        {"conversation_id": conversation_id, "user_id": uid}
        for uid in member_ids
    ]).execute()
    return conversation_id


def touch_conversation(client: Client, conversation_id: str, when: Optional[str] = None):
    client.table("conversations").update(
        {"last_message_at": when or _now()}
    ).eq("id", conversation_id).execute()


# -----------------------------
# Profiles
# -----------------------------
def search_profiles(client: Client, query: str, exclude_id: Optional[str] = None,
                    limit: int = USER_SEARCH_LIMIT) -> List[Profile]:
    query = query.strip().replace(",", " ")
    if not query:
        return []

    pattern = f"%{query}%"
    request = (
        client.table("profiles")
        .select("*")
        .or_(f"username.ilike.{pattern},display_name.ilike.{pattern}")
    )
    if exclude_id:
        request = request.neq("id", exclude_id)
    result = request.order("username").limit(limit).execute()
    return [Profile.model_validate(r) for r in result.data]


# -----------------------------
# Chat requests
# -----------------------------
def insert_chat_request(client: Client, sender_id: str, receiver_id: str) -> ChatRequest:
    result = (
        client.table("chat_requests")
        .insert({"sender_id": sender_id, "receiver_id": receiver_id, "status": "pending"})
        .execute()
    )
    return ChatRequest.from_row(result.data[0])


def pending_chat_request(client: Client, sender_id: str, receiver_id: str) -> Optional[ChatRequest]:
    result = (
        client.table("chat_requests")
        .select("*")
        .eq("sender_id", sender_id)
        .eq("receiver_id", receiver_id)
        .eq("status", "pending")
        .limit(1)
        .execute()
    )
    return ChatRequest.from_row(result.data[0]) if result.data else None


def pending_chat_requests(client: Client, receiver_id: str) -> List[ChatRequest]:
    """
    Pending requests addressed to a user, oldest first, with the
    sender's profile expanded.
    """
    result = (
        client.table("chat_requests")
        .select(CHAT_REQUEST_SELECT)
        .eq("receiver_id", receiver_id)
        .eq("status", "pending")
        .order("created_at")
        .execute()
    )
    return [ChatRequest.from_row(r) for r in result.data]


def answer_chat_request(client: Client, request_id: str, receiver_id: str,
                        status: str) -> Optional[ChatRequest]:
    """
    Move a pending request to `status`. Returns None when it was not
    pending or not addressed to `receiver_id`.
    """
    result = (
        client.table("chat_requests")
        .update({"status": status})
        .eq("id", request_id)
        .eq("receiver_id", receiver_id)
        .eq("status", "pending")
        .execute()
    )
    return ChatRequest.from_row(result.data[0]) if result.data else None


# -----------------------------
# Messages
# -----------------------------
def insert_message(client: Client, conversation_id: str, sender_id: str, content: str) -> Message:
    result = (
        client.table("messages")
        .insert({
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "read_by": [],
        })
        .execute()
    )
    return Message.from_row(result.data[0])


def get_message(client: Client, message_id: str) -> Optional[Message]:
    result = (
        client.table("messages")
        .select(MESSAGE_SELECT)
        .eq("id", message_id)
        .limit(1)
        .execute()
    )
    return Message.from_row(result.data[0]) if result.data else None


def update_read_by(client: Client, message_id: str, previous: List[str],
                   read_by: List[str]) -> Optional[Message]:
    """
    Compare-and-set of a message's read_by list.

    Only updates the row when its list still equals `previous`;
    returns None when another reader changed it first.
    """
    request = client.table("messages").update({"read_by": read_by}).eq("id", message_id)
    if previous:
        request = request.eq("read_by", _array_literal(previous))
    else:
        request = request.or_("read_by.is.null,read_by.eq.{}")
    result = request.execute()
    return Message.from_row(result.data[0]) if result.data else None


# -----------------------------
# Storage
# -----------------------------
def upload_image(client: Client, conversation_id: str, data: bytes, filename: str,
                 content_type: Optional[str] = None) -> str:
    """
    Upload an attachment under `<conversation_id>/<timestamp>_<filename>`
    and return its public URL.
    """
    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    safe_name = "".join(c if c.isalnum() or c in "._-" else "_" for c in filename)
    path = f"{conversation_id}/{stamp}_{safe_name}"

    bucket = client.storage.from_(STORAGE_BUCKET)
    bucket.upload(path, data, {"content-type": content_type or "application/octet-stream"})
    return bucket.get_public_url(path)
