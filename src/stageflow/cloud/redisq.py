from __future__ import annotations

import redis.asyncio as redis

from ..model import TriggerEvent

PENDING = "pending"


def make_client(url: str) -> redis.Redis:
    return redis.from_url(url, decode_responses=True)


def trigger_lock_key(trigger: TriggerEvent) -> str:
    ref, commit = trigger.dedup_key
    return f"stageflow:trigger_lock:{ref}:{commit}"


async def claim_trigger(r: redis.Redis, trigger: TriggerEvent, ttl_s: int) -> str | None:
    """
    Take the cross-replica lock for a ref+commit.

    Returns None when the lock was taken, otherwise the value held by the
    current owner (a run id, or PENDING while the owner is still admitting).
    """
    key = trigger_lock_key(trigger)
    if await r.set(key, PENDING, nx=True, ex=ttl_s):
        return None
    return await r.get(key) or PENDING


async def bind_trigger(r: redis.Redis, trigger: TriggerEvent, run_id: str) -> None:
    await r.set(trigger_lock_key(trigger), run_id, xx=True, keepttl=True)


async def release_trigger(r: redis.Redis, trigger: TriggerEvent) -> None:
    await r.delete(trigger_lock_key(trigger))
