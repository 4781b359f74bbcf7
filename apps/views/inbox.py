import logging
import time

import streamlit as st

from common import open_chat, page_feed, require_session, sign_out
from messenger.chat import InvalidConversation
from messenger.config import REALTIME_POLL_SECONDS, SEARCH_DEBOUNCE_SECONDS
from messenger.inbox import GroupTooSmall, InboxController

logger = logging.getLogger(__name__)

session = require_session()

# Controller lives as long as the browser stays on the inbox.
if st.session_state.get("inbox_user") != session.user_id:
    st.session_state.inbox = InboxController(session)
    st.session_state.inbox_user = session.user_id
    st.session_state.inbox_loaded = False

inbox: InboxController = st.session_state.inbox
inbox.session = session

if not st.session_state.inbox_loaded:
    try:
        inbox.load()
    except Exception as e:
        st.error(f"Could not load conversations: {e}")
    st.session_state.inbox_loaded = True

feed = page_feed("inbox")
if feed is not None:
    inbox.subscribe(feed)


# -----------------------------
# Header
# -----------------------------
left, right = st.columns([4, 1])
with left:
    st.title("📥 Inbox")
    st.caption(f"Signed in as **{session.profile.name}** (@{session.profile.username})")
with right:
    if st.button("Log out"):
        sign_out(session)


# -----------------------------
# New chat dialogs
# -----------------------------
def _user_picker(key: str):
    query = st.text_input("Search people", key=key)
    results = inbox.search_users(query)
    if not inbox.user_search.settled:
        st.caption("Searching…")
        time.sleep(SEARCH_DEBOUNCE_SECONDS)
        st.rerun(scope="fragment")
    if query.strip() and not results:
        st.caption("No matching users.")
    return results


@st.dialog("New direct chat")
def direct_chat_dialog():
    for profile in _user_picker("direct_search"):
        if st.button(f"{profile.name} (@{profile.username})", key=f"direct-{profile.id}"):
            try:
                conversation_id = inbox.start_direct_chat(profile.id)
            except InvalidConversation as e:
                st.warning(str(e))
            except Exception as e:
                st.error(f"Could not start chat: {e}")
            else:
                open_chat(conversation_id)
        if st.button("Send chat request", key=f"request-{profile.id}", type="tertiary"):
            try:
                inbox.request_chat(profile.id)
            except InvalidConversation as e:
                st.warning(str(e))
            except Exception as e:
                st.error(f"Could not send request: {e}")
            else:
                st.success(f"Request sent to {profile.name}.")


@st.dialog("New group chat")
def group_chat_dialog():
    picked = st.session_state.setdefault("group_members", {})

    for profile in _user_picker("group_search"):
        if profile.id not in picked and st.button(f"➕ {profile.name}", key=f"add-{profile.id}"):
            picked[profile.id] = profile
            st.rerun(scope="fragment")

    if picked:
        st.write("Members: " + ", ".join(p.name for p in picked.values()))
    name = st.text_input("Group name")

    if st.button("Create group"):
        try:
            conversation_id = inbox.start_group_chat(
                list(picked), name=name, member_profiles=list(picked.values())
            )
        except GroupTooSmall as e:
            st.warning(str(e))
        except Exception as e:
            st.error(f"Could not create group: {e}")
        else:
            st.session_state.pop("group_members", None)
            open_chat(conversation_id)


direct_col, group_col = st.columns(2)
if direct_col.button("✉️ New chat", use_container_width=True):
    inbox.user_search.reset()
    direct_chat_dialog()
if group_col.button("👥 New group", use_container_width=True):
    inbox.user_search.reset()
    st.session_state.pop("group_members", None)
    group_chat_dialog()


# -----------------------------
# Chat requests
# -----------------------------
try:
    requests = inbox.pending_requests()
except Exception:
    logger.exception("Could not load chat requests for %s", session.user_id)
    requests = []

if requests:
    st.subheader(f"Chat requests ({len(requests)})")
for request in requests:
    sender = request.sender.name if request.sender else "Someone"
    with st.container(border=True):
        text_col, accept_col, decline_col = st.columns([4, 1, 1])
        text_col.markdown(f"**{sender}** wants to chat")
        if accept_col.button("Accept", key=f"accept-{request.id}"):
            try:
                conversation_id = inbox.accept_request(request.id)
            except InvalidConversation as e:
                st.warning(str(e))
            except Exception as e:
                st.error(f"Could not accept request: {e}")
            else:
                open_chat(conversation_id)
        if decline_col.button("Decline", key=f"decline-{request.id}"):
            try:
                inbox.decline_request(request.id)
            except Exception as e:
                st.error(f"Could not decline request: {e}")
            else:
                st.rerun()


# -----------------------------
# Conversation list
# -----------------------------
search = st.text_input("Search conversations", placeholder="Filter by name or message")


@st.fragment(run_every=REALTIME_POLL_SECONDS if feed is not None else None)
def conversation_list(query: str):
    if feed is not None:
        inbox.apply_all(feed.drain())

    items = inbox.items(query)
    if not items:
        st.info("No conversations yet. Start one above." if not query else "No matches.")
        return

    for item in items:
        with st.container(border=True):
            icon = "👥" if item.is_group else ("🟢" if item.online else "⚪")
            text_col, time_col = st.columns([5, 1])
            with text_col:
                if st.button(f"{icon} **{item.title}**", key=f"open-{item.conversation_id}"):
                    open_chat(item.conversation_id)
                st.caption(item.preview)
            with time_col:
                st.caption(item.time_label)
                if item.unread:
                    st.markdown(f"**{item.unread}** new")


conversation_list(search)
