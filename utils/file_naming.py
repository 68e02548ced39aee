# -*- coding: utf-8 -*-
"""存储文件名、缩略图文件名与对外 URL 的推导规则。

入库流程和"另存为副本"的编辑流程共用这里的函数。
"""

from __future__ import annotations

import hashlib
import mimetypes
import re
import unicodedata
from pathlib import PurePosixPath
from typing import Optional

THUMBNAIL_PREFIX = "thumb_"
TOKEN_LENGTH = 16
SLUG_MAX_LENGTH = 80

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")
_EXT_RE = re.compile(r"^[a-z0-9]{1,10}$")


def slugify(value: str, fallback: str = "file") -> str:
    normalized = unicodedata.normalize("NFKD", value or "")
    ascii_only = normalized.encode("ascii", "ignore").decode("ascii").lower()
    slug = _SLUG_STRIP_RE.sub("-", ascii_only).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-") or fallback


def guess_extension(original_name: str, mime_type: Optional[str] = None) -> str:
    suffix = PurePosixPath((original_name or "").replace("\\", "/")).suffix.lstrip(".").lower()
    if _EXT_RE.match(suffix):
        return suffix
    if mime_type:
        guessed = mimetypes.guess_extension(mime_type, strict=False) or ""
        if guessed:
            return guessed.lstrip(".")
    return "bin"


def build_stored_name(original_name: str, content_hash: str, mime_type: Optional[str] = None) -> str:
    """slug(原始文件名) + "-" + hash 前 8 位 + "." + 扩展名"""

    stem = PurePosixPath((original_name or "").replace("\\", "/")).stem
    return f"{slugify(stem)}-{content_hash[:8]}.{guess_extension(original_name, mime_type)}"


def with_collision_suffix(stored_name: str, counter: int) -> str:
    path = PurePosixPath(stored_name)
    return f"{path.stem}-{counter}{path.suffix}"


def thumbnail_name(stored_name: str) -> str:
    return f"{THUMBNAIL_PREFIX}{stored_name}"


def join_storage_path(storage_dir: str, name: str) -> str:
    return f"{storage_dir.strip('/')}/{name}"


def protected_token(content_hash: str, storage_dir: str) -> str:
    """受保护文件 URL 中的路径令牌。

    由 hash 与目录确定性地推导，可随时重建，不是安全边界。
    """

    return hashlib.sha1(f"{content_hash}{storage_dir}".encode("utf-8")).hexdigest()[:TOKEN_LENGTH]


def build_public_url(
    public_path: str,
    storage_dir: str,
    name: str,
    *,
    is_public: bool,
    content_hash: str,
) -> str:
    prefix = (public_path or "").rstrip("/")
    if is_public:
        return f"{prefix}/{storage_dir}/{name}"
    return f"{prefix}/{storage_dir}/{protected_token(content_hash, storage_dir)}/{name}"


def dedup_key(content_hash: str, original_name: str) -> str:
    return hashlib.sha1(f"{content_hash}\x00{original_name}".encode("utf-8")).hexdigest()
