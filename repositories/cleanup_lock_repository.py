# repositories/cleanup_lock_repository.py
import uuid
from typing import Optional

from extensions.redis_client import get_redis


class CleanupLockRepository:
    """多个 worker 同时跑定时清理时，只允许一个执行。"""

    @staticmethod
    def acquire(name: str, timeout: int) -> Optional[str]:
        token = uuid.uuid4().hex
        r = get_redis()
        if r.set(name, token, nx=True, ex=timeout):
            return token
        return None

    @staticmethod
    def release(name: str, token: str):
        r = get_redis()
        current = r.get(name)
        # 锁已超时被别人拿走时不能删
        if current in (token, token.encode()):
            r.delete(name)
