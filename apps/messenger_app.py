import streamlit as st

from common import CHAT_PAGE, INBOX_PAGE, LOGIN_PAGE, configure_logging

configure_logging()

st.set_page_config(page_title="Messenger", page_icon="💬")

pages = st.navigation(
    [
        st.Page(LOGIN_PAGE, title="Log in", icon="🔑", default=True),
        st.Page(INBOX_PAGE, title="Inbox", icon="📥"),
        st.Page(CHAT_PAGE, title="Chat", icon="💬"),
    ],
    position="hidden",
)
pages.run()
