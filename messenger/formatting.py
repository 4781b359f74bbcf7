"""
Display helpers shared by the inbox and chat pages: relative time
labels, date separators and the image markup stored in message content.
"""
import html
import re
from datetime import datetime, timezone
from typing import Optional

IMAGE_CLASS = "chat-image"
IMAGE_PATTERN = re.compile(r'^\s*<img\s+src="([^"]+)"[^>]*>\s*$', re.IGNORECASE)

PHOTO_PREVIEW = "📷 Photo"


def _align(ts: datetime, now: Optional[datetime]):
    if now is None:
        now = datetime.now().astimezone()
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return ts.astimezone(now.tzinfo), now


def relative_time(ts: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Short label for the inbox list ("now", "5m", "3h", "Yesterday", ...)."""
    if ts is None:
        return ""
    ts, now = _align(ts, now)

    seconds = (now - ts).total_seconds()
    if seconds < 60:
        return "now"
    if seconds < 3600:
        return f"{int(seconds // 60)}m"

    days = (now.date() - ts.date()).days
    if days == 0:
        return f"{int(seconds // 3600)}h"
    if days == 1:
        return "Yesterday"
    if days < 7:
        return ts.strftime("%A")
    return ts.strftime("%d/%m/%y")


def date_label(ts: datetime, now: Optional[datetime] = None) -> str:
    """Label of the separator placed above the first message of a day."""
    ts, now = _align(ts, now)
    days = (now.date() - ts.date()).days
    if days == 0:
        return "Today"
    if days == 1:
        return "Yesterday"
    if 1 < days < 7:
        return ts.strftime("%A")
    return ts.strftime("%B %d, %Y")


def clock(ts: datetime, now: Optional[datetime] = None) -> str:
    ts, _ = _align(ts, now)
    return ts.strftime("%H:%M")


def image_markup(url: str) -> str:
    return f'<img src="{html.escape(url, quote=True)}" class="{IMAGE_CLASS}">'


def parse_image(content: str) -> Optional[str]:
    """Return the image URL of an image message, None for text."""
    match = IMAGE_PATTERN.match(content or "")
    if not match:
        return None
    return html.unescape(match.group(1))


def preview(content: Optional[str], limit: int = 60) -> str:
    if not content:
        return ""
    if parse_image(content):
        return PHOTO_PREVIEW
    text = " ".join(content.split())
    if len(text) > limit:
        return text[: limit - 1] + "…"
    return text

