# -*- coding: utf-8 -*-
"""附件文件访问.

- 公开文件：/uploads/<storage_dir>/<stored_name>
- 受保护文件：/uploads/<storage_dir>/<token>/<stored_name>
- 缩略图：把 stored_name 换成 thumb_<stored_name>
"""

from __future__ import annotations

import hmac
import mimetypes
from typing import Optional, Tuple

from flask import Blueprint, Response, abort, send_file

from extensions.content_store import content_store
from models.attachment import Attachment
from repositories.attachment_repository import AttachmentRepository
from utils.exceptions import NotFoundError
from utils.file_naming import THUMBNAIL_PREFIX, join_storage_path, protected_token

file_serve_bp = Blueprint("file_serve", __name__, url_prefix="/uploads")

PUBLIC_MAX_AGE = 7 * 24 * 3600


def _lookup(storage_dir: str, name: str) -> Tuple[Optional[Attachment], bool]:
    """返回 (记录, 是否请求缩略图)。"""

    if not storage_dir:
        return None, False
    attachment = AttachmentRepository.get_by_full_path(join_storage_path(storage_dir, name))
    if attachment is not None:
        return attachment, False
    if name.startswith(THUMBNAIL_PREFIX):
        stored_name = name[len(THUMBNAIL_PREFIX):]
        attachment = AttachmentRepository.get_by_full_path(join_storage_path(storage_dir, stored_name))
        if attachment is not None and attachment.thumbnail_path:
            return attachment, True
    return None, False


def _resolve(file_path: str) -> Tuple[Attachment, str]:
    parts = [p for p in file_path.split("/") if p]
    if len(parts) < 2 or any(p in (".", "..") for p in parts):
        abort(404)

    # 公开路径
    attachment, thumb = _lookup("/".join(parts[:-1]), parts[-1])
    if attachment is not None and attachment.is_public:
        return attachment, attachment.thumbnail_path if thumb else attachment.full_path

    # 受保护路径：倒数第二段是令牌
    if len(parts) >= 3:
        storage_dir = "/".join(parts[:-2])
        attachment, thumb = _lookup(storage_dir, parts[-1])
        if attachment is not None and not attachment.is_public:
            expected = protected_token(attachment.content_hash, attachment.storage_dir)
            if hmac.compare_digest(expected, parts[-2]):
                return attachment, attachment.thumbnail_path if thumb else attachment.full_path
    abort(404)


@file_serve_bp.get("/<path:file_path>")
def serve_file(file_path: str):
    """根据 URL 返回附件内容；未激活（已删除）的文件一律 404."""

    attachment, relative_path = _resolve(file_path)
    if not attachment.is_active:
        abort(404)

    mimetype = attachment.mime_type
    if relative_path != attachment.full_path:
        mimetype = mimetypes.guess_type(relative_path)[0] or attachment.mime_type

    local = content_store.local_path(relative_path)
    if local is not None:
        if not local.is_file():
            abort(404)
        response = send_file(local, mimetype=mimetype, conditional=True)
    else:
        try:
            response = Response(content_store.get(relative_path), mimetype=mimetype)
        except NotFoundError:
            abort(404)

    # send_file 默认带 no-cache，这里按可见性重新设置
    response.cache_control.no_cache = None
    if attachment.is_public:
        response.cache_control.public = True
        response.cache_control.max_age = PUBLIC_MAX_AGE
    else:
        response.cache_control.private = True
        response.cache_control.no_store = True
        response.headers["X-Robots-Tag"] = "noindex, nofollow"
    return response
