"""
Thin wrappers around Supabase auth and the `profiles` table.

Errors raised by the SDK (invalid credentials, duplicate account,
network failure) propagate to the caller unchanged.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from supabase import Client

from messenger.models import Profile

logger = logging.getLogger(__name__)


class NotAuthenticated(Exception):
    """No active session; the caller should send the user to log in."""


@dataclass
class AppSession:
    """
    Per-browser context handed to page controllers.
    """
    client: Client
    user: Any
    profile: Profile

    @property
    def user_id(self) -> str:
        return self.user.id


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def sign_up(client: Client, email: str, password: str, username: str,
            display_name: Optional[str] = None) -> Profile:
    """Create the auth identity and its profile row."""
    display_name = display_name or username
    resp = client.auth.sign_up({
        "email": email,
        "password": password,
        "options": {"data": {"username": username, "display_name": display_name}},
    })

    row = {
        "id": resp.user.id,
        "username": username,
        "display_name": display_name,
        "status": "offline",
        "last_seen": _now(),
    }
    if resp.session is None:
        # Email confirmation pending: the auth.users trigger creates the row.
        logger.info("Signed up %s (%s), awaiting confirmation", username, resp.user.id)
        return Profile.model_validate(row)

    result = client.table("profiles").upsert(row, on_conflict="id").execute()
    logger.info("Signed up %s (%s)", username, resp.user.id)
    return Profile.model_validate(result.data[0])


def log_in(client: Client, email: str, password: str):
    resp = client.auth.sign_in_with_password({"email": email, "password": password})
    set_presence(client, resp.user.id, online=True)
    logger.info("Logged in %s", resp.user.id)
    return resp.session


def log_out(client: Client, user_id: Optional[str] = None):
    if user_id:
        try:
            set_presence(client, user_id, online=False)
        except Exception:
            logger.exception("Could not mark %s offline", user_id)
    client.auth.sign_out()


def current_user(client: Client):
    """Return the signed-in user, or None without a session."""
    resp = client.auth.get_user()
    return resp.user if resp else None


def require_user(client: Client):
    user = current_user(client)
    if user is None:
        raise NotAuthenticated("Not logged in")
    return user


def get_profile(client: Client, user_id: str) -> Optional[Profile]:
    result = (
        client.table("profiles")
        .select("*")
        .eq("id", user_id)
        .limit(1)
        .execute()
    )
    if not result.data:
        return None
    return Profile.model_validate(result.data[0])


def update_profile(client: Client, user_id: str, **fields) -> Profile:
    result = client.table("profiles").update(fields).eq("id", user_id).execute()
    return Profile.model_validate(result.data[0])


def set_presence(client: Client, user_id: str, online: bool) -> Profile:
    return update_profile(
        client,
        user_id,
        status="online" if online else "offline",
        last_seen=_now(),
    )


def open_session(client: Client) -> AppSession:
    """
    Resolve the signed-in user and their profile into an AppSession.
    Raises NotAuthenticated when there is no session or no profile.
    """
    user = require_user(client)
    profile = get_profile(client, user.id)
    if profile is None:
        raise NotAuthenticated(f"No profile for user {user.id}")
    return AppSession(client=client, user=user, profile=profile)
