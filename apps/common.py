"""
Streamlit glue shared by the pages: per-browser Supabase client,
session guard, navigation and the realtime feed lifecycle.
"""
import logging

import streamlit as st
from streamlit.runtime import get_instance
from streamlit.runtime.scriptrunner import get_script_run_ctx

from messenger.auth import AppSession, NotAuthenticated, log_out, open_session, set_presence
from messenger.client import get_client
from messenger.config import LOG_LEVEL
from messenger.realtime import FeedRegistry, RealtimeFeed

LOGIN_PAGE = "views/login.py"
INBOX_PAGE = "views/inbox.py"
CHAT_PAGE = "views/chat.py"

logger = logging.getLogger("apps")


def configure_logging():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def browser_client():
    """One Supabase client per browser session; it holds the auth session."""
    if "client" not in st.session_state:
        st.session_state.client = get_client()
    return st.session_state.client


def require_session() -> AppSession:
    """Resolve the signed-in user or send the browser to the login page."""
    try:
        session = open_session(browser_client())
    except NotAuthenticated:
        session = None
    except Exception:
        logger.exception("Session lookup failed")
        session = None

    if session is None:
        st.switch_page(LOGIN_PAGE)

    if not st.session_state.get("presence_marked"):
        try:
            session.profile = set_presence(session.client, session.user_id, online=True)
        except Exception:
            logger.exception("Could not mark %s online", session.user_id)
        st.session_state.presence_marked = True
    return session


def open_chat(conversation_id: str):
    st.session_state.conversation_id = conversation_id
    st.session_state.inbox_loaded = False
    st.session_state.pop("chat_scope", None)
    st.switch_page(CHAT_PAGE)


def sign_out(session: AppSession):
    close_feed()
    log_out(session.client, session.user_id)
    for key in list(st.session_state.keys()):
        if key != "client":
            del st.session_state[key]
    st.switch_page(LOGIN_PAGE)


# -----------------------------
# Realtime feed lifecycle
# -----------------------------
@st.cache_resource
def feed_registry() -> FeedRegistry:
    """Process-wide registry of the feeds of every browser session."""
    return FeedRegistry()


def _session_id() -> str:
    return get_script_run_ctx().session_id


def page_feed(scope: str):
    """
    Return the realtime feed of the current page. Moving to another
    page (a different scope) closes the previous feed first, and feeds
    left behind by closed tabs are reaped.
    """
    registry = feed_registry()
    registry.reap(get_instance().is_active_session)

    session_id = _session_id()
    feed = registry.get(session_id)
    if st.session_state.get("feed_scope") == scope and feed is not None:
        return feed

    close_feed()
    try:
        feed = RealtimeFeed.for_session(browser_client())
    except Exception:
        logger.exception("Realtime unavailable for %s", scope)
        return None
    registry.register(session_id, feed)
    st.session_state.feed_scope = scope
    return feed


def close_feed():
    st.session_state.pop("feed_scope", None)
    feed_registry().release(_session_id())
