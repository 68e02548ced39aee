# extensions/redis_client.py
import os
import redis
from flask import current_app, has_app_context

_redis_client = None


def get_redis():
    """清理锁使用的 Redis 连接；地址与超时优先取当前 app 配置。"""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    cfg = current_app.config if has_app_context() else {}
    url = cfg.get("REDIS_URL") or os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0")
    timeout = cfg.get("REDIS_SOCKET_TIMEOUT") or float(os.getenv("REDIS_SOCKET_TIMEOUT", 5))
    _redis_client = redis.from_url(
        url,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
        decode_responses=True,
    )
    return _redis_client
