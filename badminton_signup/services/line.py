"""LINE Messaging API push to the club's group chat."""

import httpx

from badminton_signup.core.config import Settings
from badminton_signup.core.logging import get_logger

log = get_logger(__name__)

LINE_PUSH_URL = "https://api.line.me/v2/bot/message/push"


class LineNotConfigured(Exception):
    pass


def build_message(text: str, app_url: str | None = None) -> dict:
    if app_url:
        text = f"{text}\n{app_url}"
    return {"type": "text", "text": text}


async def push_text(settings: Settings, text: str, client: httpx.AsyncClient | None = None) -> None:
    """Send one text message to the configured group. Raises on HTTP errors."""
    if not settings.line_channel_token or not settings.line_group_id:
        raise LineNotConfigured("LINE_CHANNEL_TOKEN and LINE_GROUP_ID must be set")
    body = {"to": settings.line_group_id, "messages": [build_message(text, settings.app_url)]}
    headers = {"Authorization": f"Bearer {settings.line_channel_token}"}
    if client is None:
        async with httpx.AsyncClient(timeout=10.0) as own_client:
            response = await own_client.post(LINE_PUSH_URL, json=body, headers=headers)
    else:
        response = await client.post(LINE_PUSH_URL, json=body, headers=headers)
    response.raise_for_status()
    log.info("line_push_sent", status_code=response.status_code)
