import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

import redis

import docker_service as ds
from exec_service import strip_ansi

logger = logging.getLogger(__name__)

LOGS_KEY = "logs"
STREAM_ENDED = "[stream ended]"

_NON_PRINTABLE = re.compile(r"[^\x20-\x7E\n]")

Emit = Callable[[str], Awaitable[None]]


def drop_prefix_noise(line: str) -> str:
    first = line.find("[")
    if first > 0:
        return line[first:]
    return line


def clean_log_line(line: str) -> str:
    line = _NON_PRINTABLE.sub("", strip_ansi(line))
    return drop_prefix_noise(line.strip())


class LogStore:
    """Per-container ring buffer of log lines, newest at the head of a redis list."""

    def __init__(self, client: Optional[Any] = None, limit: int = 1000, host: str = "localhost", port: int = 6379):
        self.client = client or redis.Redis(
            host=host,
            port=port,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        self.limit = limit

    def key(self, container_id: str) -> str:
        return f"{LOGS_KEY}:{container_id}"

    def add_log(self, container_id: str, line: str) -> None:
        key = self.key(container_id)
        self.client.lpush(key, line)
        self.client.ltrim(key, 0, self.limit - 1)

    def get_logs(self, container_id: str) -> List[str]:
        """Most recent first."""
        out = []
        for raw in self.client.lrange(self.key(container_id), 0, -1):
            if not raw:
                continue
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="ignore")
            out.append(drop_prefix_noise(_NON_PRINTABLE.sub("", raw)))
        return out


class Subscription:
    def __init__(self, container_id: str, stream: Any):
        self.container_id = container_id
        self.stream = stream
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        close = getattr(self.stream, "close", None)
        if close is None:
            return
        try:
            close()
        except Exception as e:
            logger.warning("closing log stream for %s failed: %s", self.container_id, e)


def open_log_stream(container_id: str) -> Iterator[bytes]:
    container = ds.get_container(container_id)
    return container.logs(stdout=True, stderr=True, stream=True, follow=True, tail=0)


class LogRelay:
    """Follows container log streams, cleans each line, stores and forwards it.

    The registry of live subscriptions is keyed by container id and only
    changes when a subscriber connects or disconnects. Nothing reconnects
    automatically.
    """

    def __init__(self, store: LogStore, opener: Callable[[str], Iterator[bytes]] = open_log_stream):
        self.store = store
        self.opener = opener
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscriptions(self, container_id: str) -> List[Subscription]:
        return list(self._subscriptions.get(container_id, []))

    def _register(self, sub: Subscription) -> None:
        self._subscriptions.setdefault(sub.container_id, []).append(sub)

    def _unregister(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.container_id)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            del self._subscriptions[sub.container_id]

    async def follow(self, container_id: str, emit: Emit) -> None:
        try:
            stream = await asyncio.to_thread(self.opener, container_id)
        except Exception as e:
            logger.error("Error subscribing to logs for %s: %s", container_id, e)
            await emit(f"[error subscribing to logs] [error]: {e}")
            return

        sub = Subscription(container_id, stream)
        self._register(sub)
        iterator = iter(stream)
        try:
            while True:
                chunk = await asyncio.to_thread(next, iterator, None)
                if chunk is None:
                    break
                text = chunk.decode("utf-8", errors="ignore") if isinstance(chunk, (bytes, bytearray)) else str(chunk)
                for line in text.split("\n"):
                    cleaned = clean_log_line(line)
                    if not cleaned:
                        continue
                    try:
                        await asyncio.to_thread(self.store.add_log, container_id, cleaned)
                    except redis.RedisError as e:
                        logger.warning("could not store log line for %s: %s", container_id, e)
                    await emit(cleaned)
            await emit(STREAM_ENDED)
        finally:
            self._unregister(sub)
            sub.close()
