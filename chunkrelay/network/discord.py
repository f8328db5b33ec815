"""Discord REST transport"""

import os
from typing import Any, Dict, Generator, List, Optional
import logging

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..exceptions import ConfigError, RateLimitedError, TransportError
from .transport import Attachment, Author, ChatTransport, Message

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"
TOKEN_ENV_NAME = "CHUNKRELAY_TOKEN"

error_token_missing_msg = (
    "No Discord token configured. "
    + "Pass it explicitly or "
    + f"set the `{TOKEN_ENV_NAME}` environment variable."
)


class BotAuth(httpx.Auth):
    def __init__(self, token: str):
        self.token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, None, None]:
        request.headers["Authorization"] = f"Bot {self.token}"
        yield request


def message_from_payload(payload: Dict[str, Any]) -> Message:
    """Build a Message from a Discord message object"""
    author = payload.get('author') or {}
    return Message(
        id=str(payload['id']),
        channel_id=str(payload.get('channel_id', '')),
        content=payload.get('content') or '',
        attachments=[
            Attachment(
                url=a['url'],
                filename=a.get('filename', ''),
                size=a.get('size', 0),
                proxy_url=a.get('proxy_url'),
            )
            for a in payload.get('attachments') or []
            if a.get('url')
        ],
        author=Author(
            id=str(author.get('id', '')),
            username=author.get('username', ''),
            avatar=author.get('avatar'),
        ) if author else None,
    )


class DiscordTransport(ChatTransport):
    """ChatTransport over the Discord HTTP API.

    Uploads go through the cloud attachment flow (request an upload slot,
    PUT the bytes, then reference the uploaded filename from a message).
    There is no gateway connection, so message events are only dispatched
    for messages this transport posts itself.
    """

    def __init__(self, token: Optional[str] = None, *,
                 base_url: str = DISCORD_API_BASE,
                 client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        if client is None:
            if token is None:
                if not (token := os.getenv(TOKEN_ENV_NAME)):
                    raise ConfigError(error_token_missing_msg)
            # 5 minutes total for large chunk PUTs, 30s connect
            timeout = httpx.Timeout(timeout=300.0, connect=30.0)
            client = httpx.AsyncClient(base_url=base_url, auth=BotAuth(token), timeout=timeout)
        self.client = client

    async def close(self):
        await self.client.aclose()

    def _check(self, response: httpx.Response, action: str):
        if response.status_code == 429:
            retry_after = 0.0
            try:
                retry_after = float(response.json().get('retry_after', 0.0))
            except (ValueError, AttributeError):
                pass
            raise RateLimitedError(f"Rate limited while {action}", retry_after=retry_after)
        if response.is_error:
            raise TransportError(f"{action} failed with HTTP {response.status_code}")

    async def send_attachment(self, data: bytes, filename: str, channel_id: str) -> str:
        response = await self.client.post(
            f"/channels/{channel_id}/attachments",
            json={'files': [{'id': '0', 'filename': filename, 'file_size': len(data)}]},
        )
        self._check(response, "requesting upload slot")
        slot = response.json()['attachments'][0]

        upload = await self.client.put(slot['upload_url'], content=data, auth=None)
        self._check(upload, f"uploading {filename}")

        logger.debug(f"Uploaded {filename} ({len(data)} bytes)")
        return slot['upload_filename']

    async def post_message(self, channel_id: str, content: str, attachment_ref: str,
                           filename: str, size: int) -> Message:
        response = await self.client.post(
            f"/channels/{channel_id}/messages",
            json={
                'content': content,
                'attachments': [{
                    'id': '0',
                    'filename': filename,
                    'uploaded_filename': attachment_ref,
                    'file_size': size,
                }],
            },
        )
        self._check(response, "posting carrier message")
        message = message_from_payload(response.json())
        self.dispatch_created(message)
        return message

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        retry=retry_if_exception_type(
            (
                httpx.ConnectError,
                httpx.TimeoutException,
                httpx.NetworkError,
                httpx.RemoteProtocolError,
            )
        ),
        reraise=True,
    )
    async def fetch_bytes(self, url: str) -> Optional[bytes]:
        response = await self.client.get(url, auth=None)
        if response.status_code != 200:
            logger.warning(f"Fetching {url} returned HTTP {response.status_code}")
            return None
        return response.content

    async def list_messages(self, channel_id: str, limit: int,
                            before: Optional[str] = None) -> List[Message]:
        params: Dict[str, Any] = {'limit': limit}
        if before:
            params['before'] = before
        response = await self.client.get(f"/channels/{channel_id}/messages", params=params)
        self._check(response, f"listing messages in {channel_id}")
        return [message_from_payload(m) for m in response.json()]
