# -*- coding: utf-8 -*-
"""
path_sanitizer.py
--------------------------------------------------------------------
存储目录的校验与生成。

- 所有目录都是相对存储根目录的相对路径，分隔符统一为 ``/``。
- 每一级只保留 ``[a-zA-Z0-9_-]``，统一小写；清洗后为空或超长的
  段替换为固定的兜底值。
- 少于两级的路径一律落到 ``misc/unknown``；超过 ``MAX_PATH_DEPTH`` 级只保留前面的部分。
因此无论调用方传入什么，生成的路径都不可能跳出存储根目录，且从不抛异常。
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from typing import Iterable, Optional

from utils.datetime_helpers import utcnow

COMPONENT_MAX_LENGTH = 50
# 8 * 50 + 7 个分隔符，落在 storage_dir 列宽（500）以内
MAX_PATH_DEPTH = 8
DEFAULT_COMPONENT_FALLBACK = "unknown"
GENERIC_BUCKET = "misc/unknown"
MIN_YEAR = 2020

DEFAULT_PUBLIC_PREFIXES = (
    "public",
    "methodologies",
    "downloads",
    "gallery",
    "documentation",
)

_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_path_component(value, fallback: str = DEFAULT_COMPONENT_FALLBACK) -> str:
    if value is None:
        return fallback
    sanitized = _UNSAFE_CHARS_RE.sub("", str(value).strip())
    if not sanitized or len(sanitized) > COMPONENT_MAX_LENGTH:
        return fallback
    return sanitized.lower()


def validate_storage_path(path) -> str:
    """清洗调用方给出的存储目录。

    空段（``a//b``、首尾分隔符）直接丢弃；``..``、含空字节等无法清洗出
    合法字符的段替换为 ``unknown``。
    """

    if not isinstance(path, str):
        return GENERIC_BUCKET
    raw = path.replace("\\", "/").replace("\x00", "")
    components = [
        sanitize_path_component(part)
        for part in raw.split("/")
        if part.strip()
    ]
    if len(components) < 2:
        return GENERIC_BUCKET
    return "/".join(components[:MAX_PATH_DEPTH])


def is_path_public(path: str, prefixes: Optional[Iterable[str]] = None) -> bool:
    """约定：公共目录下的文件默认公开。"""

    first = (path or "").split("/", 1)[0]
    allowed = prefixes if prefixes is not None else DEFAULT_PUBLIC_PREFIXES
    return first in {p.strip().strip("/") for p in allowed if p and p.strip()}


def generate_temp_path(now: Optional[datetime] = None) -> str:
    """临时上传目录：temp/YYYY/MM/<unique>"""

    now = now or utcnow()
    return f"temp/{now:%Y}/{now:%m}/{uuid.uuid4().hex[:13]}"


def _validate_year(year: int, now: Optional[datetime] = None) -> int:
    current_year = (now or utcnow()).year
    try:
        year = int(year)
    except (TypeError, ValueError):
        return current_year
    return year if MIN_YEAR <= year <= current_year + 5 else current_year


def generate_report_path(year: int, kkz: str, obvod: str, report_id: int) -> str:
    valid_year = _validate_year(year)
    try:
        valid_report_id = max(1, int(report_id))
    except (TypeError, ValueError):
        valid_report_id = 1
    return "reports/{}/{}/{}/{}".format(
        valid_year,
        sanitize_path_component(kkz),
        sanitize_path_component(obvod),
        valid_report_id,
    )


def generate_user_path(user_id) -> str:
    try:
        valid_user_id = max(1, int(user_id))
    except (TypeError, ValueError):
        valid_user_id = 1
    return f"users/{valid_user_id}"


def generate_generic_path(kind: str, sub_path: str = "") -> str:
    sanitized_kind = sanitize_path_component(kind, "misc")
    if sub_path:
        return f"{sanitized_kind}/{sanitize_path_component(sub_path)}"
    return sanitized_kind


def generate_methodology_path(category: str = "general") -> str:
    return f"methodologies/{sanitize_path_component(category, 'general')}"


def generate_download_path(category: str = "general") -> str:
    return f"downloads/{sanitize_path_component(category, 'general')}"


def generate_gallery_path(album: str = "general") -> str:
    return f"gallery/{sanitize_path_component(album, 'general')}"
