"""Cross-tab coordination of password-recovery and email-verification flows.

A tab inside one of those flows announces it so sibling tabs of the same
browser profile do not treat the provider's SIGNED_IN push as a login. The
durable flag is authoritative; the broadcast channel only speeds things up for
tabs that are already listening.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis

from lostfound.logging import get_logger
from lostfound.service.navigation import FlowKind

logger = get_logger(__name__)

FLOW_FLAG_KEY = "lostfound_auth_flow"
CHANNEL_NAME = "lostfound_auth_channel"

AUTH_FLOW_START = "AUTH_FLOW_START"
AUTH_FLOW_END = "AUTH_FLOW_END"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuthFlowFlag:
    flow: FlowKind
    origin_tab: str
    announced_at: datetime

    def is_stale(self, now: datetime, stale_after: timedelta) -> bool:
        return now - self.announced_at >= stale_after

    def to_dict(self) -> dict:
        return {
            "flow": self.flow.value,
            "origin_tab": self.origin_tab,
            "announced_at": self.announced_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict) -> Optional["AuthFlowFlag"]:
        try:
            announced = datetime.fromisoformat(raw["announced_at"])
            if announced.tzinfo is None:
                announced = announced.replace(tzinfo=timezone.utc)
            return cls(
                flow=FlowKind(raw["flow"]),
                origin_tab=str(raw["origin_tab"]),
                announced_at=announced,
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class ChannelMessage:
    kind: str
    origin_tab: str
    flow: Optional[FlowKind] = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "origin_tab": self.origin_tab,
            "flow": self.flow.value if self.flow else None,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> Optional["ChannelMessage"]:
        kind = raw.get("kind")
        if kind not in (AUTH_FLOW_START, AUTH_FLOW_END) or not raw.get("origin_tab"):
            return None
        flow = raw.get("flow")
        try:
            return cls(kind=kind, origin_tab=str(raw["origin_tab"]), flow=FlowKind(flow) if flow else None)
        except ValueError:
            return None


MessageHandler = Callable[[ChannelMessage], Awaitable[None]]


class LocalFlagStore:
    """In-process durable flag storage for tabs living in one process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, tuple[dict, datetime]] = {}

    async def get(self, key: str) -> Optional[dict]:
        with self._lock:
            stored = self._values.get(key)
            if not stored:
                return None
            value, expires_at = stored
            if expires_at <= _now():
                self._values.pop(key, None)
                return None
            return dict(value)

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (dict(value), _now() + timedelta(seconds=max(1, ttl_seconds)))

    async def delete(self, key: str, *, expected: Optional[dict] = None) -> bool:
        with self._lock:
            stored = self._values.get(key)
            if not stored:
                return False
            if expected is not None and stored[0] != expected:
                return False
            self._values.pop(key, None)
            return True


class RedisFlagStore:
    def __init__(self, cache) -> None:
        self.cache = cache

    async def get(self, key: str) -> Optional[dict]:
        return await self.cache.get_flag(key)

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        await self.cache.set_flag(key, value, ttl_seconds)

    async def delete(self, key: str, *, expected: Optional[dict] = None) -> bool:
        return await self.cache.delete_flag(key, expected=expected)


class LocalBroadcastChannel:
    """Origin-scoped channel; a message is never delivered back to its sender."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[MessageHandler]] = {}

    def subscribe(self, tab_id: str, handler: MessageHandler) -> Callable[[], None]:
        with self._lock:
            self._subscribers.setdefault(tab_id, []).append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._subscribers.get(tab_id, [])
                if handler in handlers:
                    handlers.remove(handler)
                if not handlers:
                    self._subscribers.pop(tab_id, None)

        return _unsubscribe

    async def post(self, message: ChannelMessage) -> None:
        with self._lock:
            targets = [
                handler
                for tab_id, handlers in self._subscribers.items()
                if tab_id != message.origin_tab
                for handler in handlers
            ]
        for handler in targets:
            try:
                await handler(message)
            except Exception as exc:
                logger.error(
                    "auth_channel_handler_failed", kind=message.kind, error=str(exc)
                )


class RedisBroadcastChannel:
    """Pub/sub channel for tabs served by different processes.

    Messages are published through the cache; a listener task with its own
    connection fans incoming messages out to the local subscribers.
    """

    def __init__(self, cache, channel: str = CHANNEL_NAME) -> None:
        self.cache = cache
        self.channel = channel
        self._client = aioredis.from_url(cache.redis_url, decode_responses=True)
        self._local = LocalBroadcastChannel()
        self._listener: Optional[asyncio.Task] = None

    def subscribe(self, tab_id: str, handler: MessageHandler) -> Callable[[], None]:
        return self._local.subscribe(tab_id, handler)

    async def post(self, message: ChannelMessage) -> None:
        await self.cache.publish(self.channel, message.to_dict())

    async def start(self) -> None:
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen())

    async def _listen(self) -> None:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for raw in pubsub.listen():
                if raw.get("type") != "message":
                    continue
                try:
                    payload = json.loads(raw.get("data") or "")
                except (json.JSONDecodeError, TypeError):
                    logger.warning("auth_channel_message_invalid")
                    continue
                message = ChannelMessage.from_dict(payload) if isinstance(payload, dict) else None
                if message:
                    await self._local.post(message)
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.close()

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        await self._client.close()


class CrossTabCoordinator:
    """Announces and observes auth flows on behalf of one tab."""

    def __init__(
        self,
        tab_id: str,
        flags,
        channel,
        *,
        stale_after: int = 900,
    ) -> None:
        self.tab_id = tab_id
        self.flags = flags
        self.channel = channel
        self.stale_after = timedelta(seconds=stale_after)
        self._owned: Optional[AuthFlowFlag] = None
        self._handlers: List[MessageHandler] = []
        self._handlers_lock = threading.Lock()
        self._unsubscribe_channel = channel.subscribe(tab_id, self._on_message)

    @property
    def owned_flow(self) -> Optional[FlowKind]:
        return self._owned.flow if self._owned else None

    async def announce(self, flow: FlowKind) -> AuthFlowFlag:
        flag = AuthFlowFlag(flow=flow, origin_tab=self.tab_id, announced_at=_now())
        await self.flags.set(
            FLOW_FLAG_KEY, flag.to_dict(), int(self.stale_after.total_seconds())
        )
        self._owned = flag
        logger.info("auth_flow_announced", tab_id=self.tab_id, flow=flow.value)
        await self._post(ChannelMessage(kind=AUTH_FLOW_START, origin_tab=self.tab_id, flow=flow))
        return flag

    async def retract(self) -> bool:
        """Clear the flag if this tab still owns it. Safe to call repeatedly."""
        owned = self._owned
        self._owned = None
        if owned is None:
            return False
        removed = await self.flags.delete(FLOW_FLAG_KEY, expected=owned.to_dict())
        logger.info("auth_flow_retracted", tab_id=self.tab_id, flow=owned.flow.value, removed=removed)
        await self._post(ChannelMessage(kind=AUTH_FLOW_END, origin_tab=self.tab_id, flow=owned.flow))
        return removed

    async def active_flow(self, *, exclude_self: bool = True) -> Optional[AuthFlowFlag]:
        raw = await self.flags.get(FLOW_FLAG_KEY)
        if not raw:
            return None
        flag = AuthFlowFlag.from_dict(raw)
        if flag is None:
            await self.flags.delete(FLOW_FLAG_KEY, expected=raw)
            return None
        if flag.is_stale(_now(), self.stale_after):
            await self.flags.delete(FLOW_FLAG_KEY, expected=raw)
            logger.info("auth_flow_flag_expired", origin_tab=flag.origin_tab, flow=flag.flow.value)
            return None
        if exclude_self and flag.origin_tab == self.tab_id:
            return None
        return flag

    @contextlib.asynccontextmanager
    async def hold(self, flow: FlowKind) -> AsyncIterator[AuthFlowFlag]:
        """Announce for the duration of the block; retract on every exit path."""
        flag = await self.announce(flow)
        try:
            yield flag
        finally:
            await asyncio.shield(self.retract())

    def subscribe(self, handler: MessageHandler) -> Callable[[], None]:
        with self._handlers_lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._handlers_lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    async def _post(self, message: ChannelMessage) -> None:
        try:
            await self.channel.post(message)
        except Exception as exc:
            # The durable flag already carries the state
            logger.warning("auth_channel_post_failed", kind=message.kind, error=str(exc))

    async def _on_message(self, message: ChannelMessage) -> None:
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            await handler(message)

    async def close(self) -> None:
        await self.retract()
        self._unsubscribe_channel()
