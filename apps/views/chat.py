import logging

import streamlit as st

from common import INBOX_PAGE, LOGIN_PAGE, page_feed, require_session
from messenger.chat import ChatController, DateSeparator, InvalidConversation
from messenger.config import REALTIME_POLL_SECONDS

logger = logging.getLogger("apps.chat")

session = require_session()

conversation_id = st.query_params.get("id") or st.session_state.get("conversation_id")
if not conversation_id:
    st.switch_page(INBOX_PAGE)
st.query_params["id"] = conversation_id
st.session_state.conversation_id = conversation_id

# A new controller per conversation; switching threads drops the old one.
if st.session_state.get("chat_scope") != conversation_id:
    controller = ChatController(session, conversation_id)
    try:
        controller.load()
    except InvalidConversation as e:
        logger.warning("%s", e)
        st.session_state.pop("conversation_id", None)
        st.switch_page(INBOX_PAGE)
    except Exception:
        logger.exception("Could not open conversation %s", conversation_id)
        st.switch_page(LOGIN_PAGE)
    st.session_state.chat = controller
    st.session_state.chat_scope = conversation_id

chat: ChatController = st.session_state.chat
chat.session = session

feed = page_feed(f"chat:{conversation_id}")
if feed is not None:
    try:
        chat.subscribe(feed)
    except Exception:
        logger.exception("Realtime subscription failed for %s", conversation_id)


# -----------------------------
# Header
# -----------------------------
header = chat.header()
back_col, title_col = st.columns([1, 5])
with back_col:
    if st.button("← Inbox"):
        st.session_state.pop("chat_scope", None)
        st.switch_page(INBOX_PAGE)
with title_col:
    dot = "" if header.is_group else ("🟢 " if header.online else "⚪ ")
    st.subheader(f"{dot}{header.title}")
    st.caption(header.subtitle)


# -----------------------------
# Timeline
# -----------------------------
@st.fragment(run_every=REALTIME_POLL_SECONDS if feed is not None else None)
def timeline():
    if feed is not None:
        chat.apply_all(feed.drain())

    rows = chat.timeline()
    if not rows:
        st.info("No messages yet. Say hello!")
    for row in rows:
        if isinstance(row, DateSeparator):
            st.caption(f"— {row.label} —")
            continue
        with st.chat_message("user" if row.mine else "assistant", avatar=row.avatar_url):
            if not row.mine and header.is_group:
                st.caption(row.sender_name)
            if row.image_url:
                st.image(row.image_url)
            else:
                st.text(row.text)
            ticks = (" ✓✓" if row.read else " ✓") if row.mine else ""
            st.caption(f"{row.time}{ticks}")


timeline()


# -----------------------------
# Sending
# -----------------------------
upload_key = f"upload-{st.session_state.setdefault('upload_count', 0)}"
with st.expander("📷 Send a photo"):
    upload = st.file_uploader("Image", type=["png", "jpg", "jpeg", "gif", "webp"], key=upload_key)
    if upload is not None and st.button("Send photo"):
        with st.spinner("Uploading…"):
            try:
                chat.send_image(upload.getvalue(), upload.name, upload.type)
            except Exception as e:
                st.error(f"Image upload failed: {e}")
            else:
                st.session_state.upload_count += 1
                st.rerun()

text = st.chat_input("Type a message")
if text is not None:
    try:
        sent = chat.send_text(text)
    except Exception as e:
        st.error(f"Message not sent: {e}")
    else:
        if sent is not None:
            st.rerun()
