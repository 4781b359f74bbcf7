import logging

import streamlit as st

from common import INBOX_PAGE, browser_client
from messenger.auth import current_user, log_in, sign_up

logger = logging.getLogger("apps.login")

client = browser_client()

try:
    user = current_user(client)
except Exception:
    logger.warning("Stored session is unusable", exc_info=True)
    user = None

if user is not None:
    st.switch_page(INBOX_PAGE)

st.title("💬 Messenger")

login_tab, signup_tab = st.tabs(["Log in", "Sign up"])

# -----------------------------
# Log in
# -----------------------------
with login_tab:
    with st.form("login"):
        email = st.text_input("Email")
        password = st.text_input("Password", type="password")
        submitted = st.form_submit_button("Log in")

    if submitted:
        try:
            log_in(client, email.strip(), password)
        except Exception as e:
            st.error(f"Login failed: {e}")
        else:
            st.session_state.presence_marked = True
            st.switch_page(INBOX_PAGE)

# -----------------------------
# Sign up
# -----------------------------
with signup_tab:
    with st.form("signup"):
        new_email = st.text_input("Email")
        new_password = st.text_input("Password", type="password")
        username = st.text_input("Username")
        display_name = st.text_input("Display name")
        created = st.form_submit_button("Create account")

    if created:
        if not (new_email.strip() and new_password and username.strip()):
            st.warning("Email, password and username are required.")
        else:
            try:
                sign_up(client, new_email.strip(), new_password,
                        username.strip(), display_name.strip() or None)
            except Exception as e:
                st.error(f"Sign up failed: {e}")
            else:
                st.success("Account created. You can log in now.")
