# -*- coding: utf-8 -*-
"""Datetime helpers.

当前系统所有存储在数据库中的 ``datetime`` 均视为 UTC（无时区信息）。
服务层统一用 ``utcnow()`` 取当前时间，接口层输出时再转换为带偏移的
ISO 字符串。
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """返回不带时区信息的 UTC 当前时间（与数据库中的存储格式一致）。"""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def _ensure_utc(dt: datetime) -> datetime:
    """将给定 ``datetime`` 统一转换为带 UTC 时区的对象。"""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    """把任意 ``datetime`` 转为无时区的 UTC 时间，便于和数据库字段比较。"""

    return _ensure_utc(dt).replace(tzinfo=None)


def datetime_to_iso(dt: Optional[datetime]) -> Optional[str]:
    """将 ``datetime`` 格式化为 UTC ISO 字符串。

    :param dt: 需要转换的时间; ``None`` 时直接返回 ``None``。
    :return: 带 ``+00:00`` 时区偏移的 ISO 8601 格式字符串。
    """

    if dt is None:
        return None
    return _ensure_utc(dt).isoformat()
