"""
Realtime change feed over aiohttp websockets.

Speaks the Phoenix channel protocol used by Supabase Realtime: one join
message subscribes the channel to ``postgres_changes`` on the tracked
tables, an application-level heartbeat keeps the socket alive, and every
``postgres_changes`` message becomes a ChangeEvent.

Invariants:
    - One background task per subscribed channel; unsubscribe cancels it
    - Socket errors report DEGRADED and reconnect with capped backoff
    - A server-side close reports CLOSED before reconnecting
    - Malformed messages are logged and skipped, never raised
    - Any other failure of a connection attempt reports DEGRADED and
      reconnects; only cancellation ends the subscription task

How to change safely:
    - Keep decode_message pure so protocol changes stay unit-testable
    - The feed makes no ordering promise; do not add one here
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, Optional, Sequence, Union

import aiohttp

from ..config import ConnectionSettings
from ..errors import TransportUnavailableError
from ..models import Collection
from .base import ChangeEvent, FeedState, OnEvent, OnState, Unsubscribe

logger = logging.getLogger(__name__)

TRACKED_TABLES = tuple(c.value for c in Collection)
PHOENIX_TOPIC = "phoenix"


def join_message(
    channel: str,
    ref: str,
    *,
    schema: str = "public",
    tables: Sequence[str] = TRACKED_TABLES,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the ``phx_join`` message for a channel."""
    payload: Dict[str, Any] = {
        "config": {
            "broadcast": {"self": False},
            "presence": {"key": ""},
            "postgres_changes": [
                {"event": "*", "schema": schema, "table": table} for table in tables
            ],
        },
    }
    if access_token:
        payload["access_token"] = access_token
    return {
        "topic": f"realtime:{channel}",
        "event": "phx_join",
        "payload": payload,
        "ref": ref,
    }


def heartbeat_message(ref: str) -> Dict[str, Any]:
    return {"topic": PHOENIX_TOPIC, "event": "heartbeat", "payload": {}, "ref": ref}


def decode_message(message: Any) -> Union[ChangeEvent, FeedState, None]:
    """Translate one Phoenix message into a change event or a feed state.

    Returns:
        ChangeEvent for data changes, FeedState for channel status changes,
        None for messages the feed does not act on (heartbeat replies etc.)

    Raises:
        ValueError: If the message or its payload is not an object, or a
            ``postgres_changes`` payload is malformed
    """
    if not isinstance(message, dict):
        raise ValueError(f"Realtime message is not an object: {type(message).__name__}")
    event = message.get("event")
    payload = message.get("payload") or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Realtime payload is not an object: {type(payload).__name__}")
    topic = message.get("topic")

    if event == "postgres_changes":
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ValueError("postgres_changes message carries no data")
        return ChangeEvent.from_payload(data)

    if event == "phx_reply":
        if topic == PHOENIX_TOPIC:
            return None
        if payload.get("status") == "ok":
            return FeedState.CONNECTED
        return FeedState.DEGRADED

    if event == "system":
        status = payload.get("status")
        if status == "ok":
            return FeedState.CONNECTED
        if status == "error":
            return FeedState.DEGRADED
        return None

    if event == "phx_error":
        return FeedState.DEGRADED

    if event == "phx_close":
        return FeedState.CLOSED

    return None


class RealtimeFeed:
    """ChangeFeed implementation over a Realtime websocket.

    Example:
        >>> feed = RealtimeFeed(settings, access_token=token)
        >>> unsubscribe = feed.subscribe("global-data-changes-u1", on_event, on_state)
        >>> ...
        >>> unsubscribe()
    """

    def __init__(
        self,
        settings: ConnectionSettings,
        *,
        access_token: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self._access_token = access_token
        self._tasks: Dict[str, asyncio.Task] = {}
        self._refs = itertools.count(1)

    def set_access_token(self, token: Optional[str]) -> None:
        self._access_token = token

    def subscribe(self, channel: str, on_event: OnEvent, on_state: OnState) -> Unsubscribe:
        existing = self._tasks.pop(channel, None)
        if existing is not None:
            existing.cancel()

        task = asyncio.get_running_loop().create_task(self._run(channel, on_event, on_state))
        self._tasks[channel] = task

        def unsubscribe() -> None:
            current = self._tasks.get(channel)
            if current is task:
                del self._tasks[channel]
            task.cancel()

        return unsubscribe

    async def close(self) -> None:
        """Cancel every subscription."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, channel: str, on_event: OnEvent, on_state: OnState) -> None:
        backoff = 1.0
        while True:
            try:
                await self._connect_once(channel, on_event, on_state)
                on_state(FeedState.CLOSED, None)
                backoff = 1.0
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, TransportUnavailableError) as e:
                logger.warning(
                    "Realtime connection lost",
                    extra={"channel": channel, "error": str(e), "retry_in": backoff},
                )
                error = e if isinstance(e, TransportUnavailableError) else TransportUnavailableError(str(e))
                on_state(FeedState.DEGRADED, error)
            except Exception as e:
                logger.error(
                    f"Realtime subscription failed: {e}",
                    exc_info=True,
                    extra={"channel": channel, "retry_in": backoff},
                )
                on_state(FeedState.DEGRADED, e)

            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.settings.realtime_reconnect_max)

    async def _connect_once(self, channel: str, on_event: OnEvent, on_state: OnState) -> None:
        timeout = aiohttp.ClientTimeout(total=None, connect=self.settings.request_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.ws_connect(
                self.settings.realtime_url,
                receive_timeout=self.settings.realtime_heartbeat * 2,
            ) as ws:
                await ws.send_json(
                    join_message(
                        channel,
                        str(next(self._refs)),
                        schema=self.settings.schema_name,
                        access_token=self._access_token,
                    )
                )
                logger.info("Realtime channel joining", extra={"channel": channel})

                heartbeat = asyncio.create_task(self._heartbeat(ws))
                try:
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            self._dispatch(channel, msg.data, on_event, on_state)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            raise TransportUnavailableError(f"websocket error: {ws.exception()}")
                finally:
                    heartbeat.cancel()
                    [failure] = await asyncio.gather(heartbeat, return_exceptions=True)

                if isinstance(failure, Exception):
                    raise TransportUnavailableError(f"heartbeat failed: {failure}")

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Send heartbeats; a failed send closes the socket so the reader stops."""
        try:
            while not ws.closed:
                await asyncio.sleep(self.settings.realtime_heartbeat)
                await ws.send_json(heartbeat_message(str(next(self._refs))))
        except (aiohttp.ClientError, ConnectionError, RuntimeError):
            await ws.close()
            raise

    def _dispatch(self, channel: str, raw: str, on_event: OnEvent, on_state: OnState) -> None:
        try:
            decoded = decode_message(json.loads(raw))
        except ValueError as e:
            logger.warning(f"Skipping malformed realtime message: {e}", extra={"channel": channel})
            return

        if isinstance(decoded, ChangeEvent):
            on_event(decoded)
        elif isinstance(decoded, FeedState):
            if decoded is not FeedState.CONNECTED:
                logger.warning("Realtime channel state", extra={"channel": channel, "state": decoded.value})
            on_state(decoded, None)
