"""Assistant transports: aiohttp JSON/SSE client and an in-process echo."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from parley.config import HTTPTransportConfig
from parley.core.models import MessageRequest, ResponseType
from parley.errors import TransportError, TransportHTTPError, TransportProtocolError
from parley.utils import new_id

log = logging.getLogger("parley.http")


def split_sse_event(buf: bytearray) -> tuple[bytes | None, int]:
    """Return (event_bytes, consumed_bytes) for the next complete event."""
    idx_nl = buf.find(b"\n\n")
    idx_crlf = buf.find(b"\r\n\r\n")
    if idx_nl == -1 and idx_crlf == -1:
        return None, 0
    if idx_crlf != -1 and (idx_nl == -1 or idx_crlf < idx_nl):
        return bytes(buf[:idx_crlf]), idx_crlf + 4
    return bytes(buf[:idx_nl]), idx_nl + 2


def parse_sse_data(event_bytes: bytes) -> str | None:
    data_lines: list[str] = []
    for raw_line in event_bytes.splitlines():
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r")
        if not line or line.startswith(":"):
            continue
        if line.startswith("data:"):
            data_lines.append(line[len("data:") :].lstrip())
    if not data_lines:
        return None
    return "\n".join(data_lines)


class HTTPTransport:
    """POSTs each request to the assistant backend.

    ``application/json`` replies are a full response; ``text/event-stream``
    replies carry one chunk per event.
    """

    # 5xx replies are marked retryable; this opts the transport into retries.
    allow_retry = True

    def __init__(self, config: HTTPTransportConfig, session: aiohttp.ClientSession | None = None):
        self._config = config
        self._session = session
        self._owns_session = session is None
        self._auth = aiohttp.BasicAuth(config.username, config.password) if config.password else None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(auth=self._auth)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __call__(self, request: MessageRequest, *, signal: asyncio.Event, instance: Any) -> None:
        session = await self._get_session()
        url = self._config.url
        headers = {"Accept": "application/json, text/event-stream"}
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._config.connect_timeout_secs)
        try:
            async with session.post(url, json=request.to_dict(), headers=headers, timeout=timeout) as resp:
                if resp.status >= 400:
                    detail = (await resp.text()).strip() or resp.reason
                    raise TransportHTTPError(resp.status, method="POST", url=url, detail=detail)
                if resp.content_type == "text/event-stream":
                    await self.read_sse_stream(resp, instance, signal)
                    return
                text = await resp.text()
        except aiohttp.ClientError as e:
            raise TransportError(f"POST {url} failed: {type(e).__name__}: {e}", retryable=True) from e

        if not text.strip():
            return
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise TransportProtocolError("reply is not JSON", payload_preview=text[:200]) from e
        if not isinstance(payload, dict):
            raise TransportProtocolError("reply is not a JSON object", payload_preview=text[:200])
        if signal.is_set():
            return
        payload.setdefault("request_id", request.id)
        await instance.messaging.add_message(payload)

    async def read_sse_stream(self, resp: aiohttp.ClientResponse, instance: Any, signal: asyncio.Event) -> None:
        # Raw chunk reads split on blank lines: readline() can raise
        # "Chunk too big" on one long data line.
        max_buf = self._config.max_buffer_bytes
        buf = bytearray()

        async for chunk in resp.content.iter_any():
            if signal.is_set():
                log.debug("Stopped reading the event stream: request aborted")
                break
            if not chunk:
                continue
            buf.extend(chunk)
            if len(buf) > max_buf:
                raise TransportProtocolError(f"SSE buffer too big ({len(buf)} bytes)")

            while True:
                event_bytes, consumed = split_sse_event(buf)
                if event_bytes is None:
                    break
                del buf[:consumed]

                payload = parse_sse_data(event_bytes)
                if payload is None:
                    continue
                try:
                    event = json.loads(payload)
                except json.JSONDecodeError:
                    log.warning("Skipping malformed SSE event: %r", payload[:200])
                    continue
                if isinstance(event, dict):
                    await instance.messaging.add_message_chunk(event)


class EchoTransport:
    """Streams the request text back word by word.

    An empty request gets ``welcome_text`` instead.
    """

    allow_retry = False

    def __init__(self, *, delay_secs: float = 0.0, welcome_text: str = "Hello! Say something and I will repeat it."):
        self._delay = delay_secs
        self._welcome_text = welcome_text

    async def __call__(self, request: MessageRequest, *, signal: asyncio.Event, instance: Any) -> None:
        text = request.text or self._welcome_text
        response_id = new_id()
        metadata = {"response_id": response_id}

        for index, word in enumerate(text.split()):
            if signal.is_set():
                return
            await instance.messaging.add_message_chunk(
                {
                    "partial_item": {
                        "response_type": ResponseType.TEXT.value,
                        "text": word if index == 0 else f" {word}",
                        "streaming_metadata": {"id": "1", "cancellable": True},
                    },
                    "streaming_metadata": metadata,
                }
            )
            if self._delay:
                await asyncio.sleep(self._delay)

        item = {"response_type": ResponseType.TEXT.value, "text": text, "streaming_metadata": {"id": "1"}}
        await instance.messaging.add_message_chunk({"complete_item": item, "streaming_metadata": metadata})
        await instance.messaging.add_message_chunk(
            {
                "final_response": {
                    "id": response_id,
                    "request_id": request.id,
                    "output": {"generic": [item]},
                }
            }
        )
