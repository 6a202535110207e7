"""Redis slot locks bounding how many jobs one account runs at a time."""

from __future__ import annotations

from dataclasses import dataclass
import uuid

from redis import Redis


LOCK_KEY_TEMPLATE = "eden:{account_id}:worker:slot:{slot}"
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""
EXTEND_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("expire", KEYS[1], ARGV[2])
end
return 0
"""


def account_slot_key(account_id: str, slot: int) -> str:
    return LOCK_KEY_TEMPLATE.format(account_id=account_id, slot=slot)


@dataclass(frozen=True)
class AccountSlotHandle:
    manager: "AccountSlotLockManager"
    account_id: str
    slot: int
    token: str
    key: str

    def release(self) -> bool:
        return self.manager.release(self)

    def extend(self) -> bool:
        return self.manager.extend(self)


class AccountSlotLockManager:
    """Acquire one of ``slots`` locks per account using Redis SET NX EX."""

    def __init__(self, redis_client: Redis, *, ttl_seconds: int = 120, slots: int = 1) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if slots <= 0:
            raise ValueError("slots must be positive")
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds
        self._slots = slots

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    @property
    def slots(self) -> int:
        return self._slots

    def acquire(self, account_id: str) -> AccountSlotHandle | None:
        token = str(uuid.uuid4())
        for slot in range(self._slots):
            key = account_slot_key(account_id, slot)
            if self._redis.set(key, token, nx=True, ex=self._ttl_seconds):
                return AccountSlotHandle(manager=self, account_id=account_id, slot=slot, token=token, key=key)
        return None

    def release(self, handle: AccountSlotHandle) -> bool:
        released = self._redis.eval(RELEASE_LOCK_SCRIPT, 1, handle.key, handle.token)
        return int(released) == 1

    def extend(self, handle: AccountSlotHandle) -> bool:
        extended = self._redis.eval(EXTEND_LOCK_SCRIPT, 1, handle.key, handle.token, self._ttl_seconds)
        return int(extended) == 1
