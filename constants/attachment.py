# -*- coding: utf-8 -*-
"""constants/attachment.py
--------------------------------------------------------------------
附件生命周期与图片编辑相关的枚举常量。

状态机：ACTIVE -> SOFT_DELETED -> PURGED
- ACTIVE：字节在磁盘上，记录正常可用。
- SOFT_DELETED：已设置 deleted_at，字节仍在，可在宽限期内恢复。
- PURGED：字节已删除，仅因仍被引用而保留记录。
用单一状态字段代替 "deleted_at + physically_deleted" 两个布尔组合，
避免出现 "已物理删除但字节仍在" 之类的非法组合。
"""

from enum import Enum


class AttachmentState(Enum):
    ACTIVE = "active"
    SOFT_DELETED = "soft_deleted"
    PURGED = "purged"

    @classmethod
    def values(cls) -> list[str]:
        return [m.value for m in cls]


class SaveMode(Enum):
    """图片编辑结果的保存方式。"""

    OVERWRITE = "overwrite"
    COPY = "copy"

    @classmethod
    def values(cls) -> list[str]:
        return [m.value for m in cls]


class DeleteOutcome(Enum):
    SOFT_DELETED = "soft_deleted"
    PURGED = "purged"          # 字节已删，记录因仍被引用而保留
    REMOVED = "removed"        # 字节与记录都已删除
    DETACHED = "detached"      # 只移除了调用方的引用，文件仍被其他实体使用


DEFAULT_ALLOWED_MIME_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/heic",
    "image/heif",
    "application/pdf",
)

# Pillow 可编码的 MIME -> 格式名
IMAGE_FORMATS = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/pjpeg": "JPEG",
    "image/png": "PNG",
    "image/gif": "GIF",
    "image/webp": "WEBP",
}

EXIF_ORIENTATION_TAG = 0x0112
