from __future__ import annotations
import asyncio
from typing import AsyncIterator, List, Protocol
import redis.asyncio as redis

from .tokens import QRToken

SINGLE_SLOT = "single_slot"
APPEND_ONLY = "append_only"
SCHEMES = (SINGLE_SLOT, APPEND_ONLY)

class TokenStore(Protocol):
    scheme: str

    async def put(self, token: QRToken) -> None: ...
    async def latest(self) -> QRToken | None: ...
    # yields once as soon as the subscription is open, then once per write
    def changes(self) -> AsyncIterator[None]: ...

def _check_scheme(scheme: str) -> str:
    if scheme not in SCHEMES:
        raise ValueError(f"unknown token identity scheme: {scheme!r}")
    return scheme

class RedisTokenStore:
    """
    single_slot: one hash at <prefix>:<slot>, replaced on every issuance.
    append_only: one hash per issuance at <prefix>:token:<value>, indexed by
    issuedAt (ms) in the sorted set <prefix>:index. Nothing is deleted.
    Every write publishes on <prefix>:changed in the same MULTI/EXEC.
    """

    def __init__(self, client: redis.Redis, *, scheme: str = SINGLE_SLOT, prefix: str = "qrTokens", slot: str = "current"):
        self.r = client
        self.scheme = _check_scheme(scheme)
        self.prefix = prefix
        self.slot_key = f"{prefix}:{slot}"
        self.index_key = f"{prefix}:index"
        self.channel = f"{prefix}:changed"

    def _token_key(self, value: str) -> str:
        return f"{self.prefix}:token:{value}"

    async def put(self, token: QRToken) -> None:
        record = token.to_record()
        pipe = self.r.pipeline(transaction=True)
        if self.scheme == SINGLE_SLOT:
            # create-or-replace: drop stale fields first so the slot never mixes issuances
            pipe.delete(self.slot_key)
            pipe.hset(self.slot_key, mapping=record)
        else:
            pipe.hset(self._token_key(token.value), mapping=record)
            pipe.zadd(self.index_key, {token.value: record["issuedAt"]})
        pipe.publish(self.channel, str(record["issuedAt"]))
        await pipe.execute()

    async def latest(self) -> QRToken | None:
        if self.scheme == SINGLE_SLOT:
            key = self.slot_key
        else:
            top = await self.r.zrevrange(self.index_key, 0, 0)
            if not top:
                return None
            key = self._token_key(top[0])
        data = await self.r.hgetall(key)
        if not data:
            return None
        return QRToken.from_record(data)

    async def changes(self) -> AsyncIterator[None]:
        pubsub = self.r.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            yield None
            async for msg in pubsub.listen():
                if msg.get("type") == "message":
                    yield None
        finally:
            try:
                await pubsub.unsubscribe(self.channel)
            finally:
                await pubsub.aclose()

class MemoryTokenStore:
    """In-process store with the same semantics. Safe for a single event loop only."""

    def __init__(self, *, scheme: str = SINGLE_SLOT):
        self.scheme = _check_scheme(scheme)
        self._slot: QRToken | None = None
        self._log: List[QRToken] = []
        self._watchers: List[asyncio.Queue] = []

    async def put(self, token: QRToken) -> None:
        if self.scheme == SINGLE_SLOT:
            self._slot = token
        else:
            self._log.append(token)
        for q in list(self._watchers):
            q.put_nowait(None)

    async def latest(self) -> QRToken | None:
        if self.scheme == SINGLE_SLOT:
            return self._slot
        if not self._log:
            return None
        # same tie-break as the sorted set: issuedAt, then value
        return max(self._log, key=lambda t: (t.issued_at, t.value))

    def history(self) -> List[QRToken]:
        return list(self._log) if self.scheme == APPEND_ONLY else ([self._slot] if self._slot else [])

    async def changes(self) -> AsyncIterator[None]:
        q: asyncio.Queue = asyncio.Queue()
        self._watchers.append(q)
        try:
            yield None
            while True:
                yield await q.get()
        finally:
            self._watchers.remove(q)

def build_token_store(settings, client: redis.Redis | None = None) -> TokenStore:
    if settings.qr_token_backend == "memory":
        return MemoryTokenStore(scheme=settings.qr_token_scheme)
    if client is None:
        from .redis import get_redis
        client = get_redis()
    return RedisTokenStore(
        client,
        scheme=settings.qr_token_scheme,
        prefix=settings.qr_token_key_prefix,
        slot=settings.qr_token_slot,
    )
