# -*- coding: utf-8 -*-
"""
attachment.py
--------------------------------------------------------------------
文件附件目录记录：一行对应一个已存储的文件。
- content_hash + original_name 为去重自然键，落在 dedup_key 唯一索引上；
  强制新建、编辑副本、覆盖编辑过的、已物理删除的记录 dedup_key 为 NULL（不参与去重）。
- full_path = storage_dir/stored_name，创建后不再根据其他字段重新计算。
- usage_info 是"谁在引用这个文件"的唯一事实来源，形态见 utils/usage_info.py。
- state 三态：active / soft_deleted / purged（见 constants/attachment.py）。
- uploaded_by 为外部系统的用户标识，不做外键约束。
注意：
- JSON 列一律整体重新赋值，不做原地修改，保证 SQLAlchemy 能识别变更。
"""

from typing import Optional

from extensions.database import db
from constants.attachment import AttachmentState
from utils import usage_info as usage
from utils.datetime_helpers import datetime_to_iso, utcnow
from .mixins import TimestampMixin, COMMON_TABLE_ARGS


class Attachment(TimestampMixin, db.Model):
    __tablename__ = "file_attachment"
    __table_args__ = (
        db.UniqueConstraint("dedup_key", name="uq_file_attachment_dedup_key"),
        db.Index("ix_file_attachment_hash_name", "content_hash", "original_name"),
        db.Index("ix_file_attachment_temporary", "is_temporary", "expires_at"),
        db.Index("ix_file_attachment_state", "state", "deleted_at"),
        COMMON_TABLE_ARGS,
    )

    id = db.Column(db.Integer, primary_key=True)
    content_hash = db.Column(db.String(40), nullable=False)
    dedup_key = db.Column(db.String(40))
    original_name = db.Column(db.String(255), nullable=False)
    mime_type = db.Column(db.String(128), nullable=False)
    size_bytes = db.Column(db.Integer, nullable=False, default=0)
    storage_dir = db.Column(db.String(500), nullable=False, index=True)
    stored_name = db.Column(db.String(255), nullable=False)
    full_path = db.Column(db.String(760), nullable=False, unique=True)
    public_url = db.Column(db.String(1024), nullable=False)
    is_public = db.Column(db.Boolean, nullable=False, default=False)
    thumbnail_path = db.Column(db.String(760))
    # ``metadata`` 是 declarative 保留属性名
    meta = db.Column("metadata", db.JSON, nullable=False, default=dict)
    usage_info = db.Column(db.JSON, nullable=False, default=dict)
    uploaded_by = db.Column(db.String(64), index=True)
    is_temporary = db.Column(db.Boolean, nullable=False, default=True)
    expires_at = db.Column(db.DateTime)
    deleted_at = db.Column(db.DateTime)
    state = db.Column(db.String(16), nullable=False, default=AttachmentState.ACTIVE.value)

    # ---- 状态 ----
    @property
    def lifecycle_state(self) -> AttachmentState:
        return AttachmentState(self.state or AttachmentState.ACTIVE.value)

    @property
    def is_active(self) -> bool:
        return self.lifecycle_state is AttachmentState.ACTIVE

    @property
    def is_soft_deleted(self) -> bool:
        return self.lifecycle_state is AttachmentState.SOFT_DELETED

    @property
    def physically_deleted(self) -> bool:
        return self.lifecycle_state is AttachmentState.PURGED

    @property
    def is_image(self) -> bool:
        return (self.mime_type or "").startswith("image/")

    def mark_persistent(self):
        self.is_temporary = False
        self.expires_at = None

    def soft_delete(self, now=None):
        self.state = AttachmentState.SOFT_DELETED.value
        self.deleted_at = now or utcnow()

    def restore(self):
        self.state = AttachmentState.ACTIVE.value
        self.deleted_at = None

    def mark_purged(self, now=None):
        """字节已删除但保留记录：清空缩略图并退出去重。"""
        self.state = AttachmentState.PURGED.value
        self.deleted_at = self.deleted_at or now or utcnow()
        self.thumbnail_path = None
        self.dedup_key = None
        self.mark_persistent()

    def is_expired(self, now=None) -> bool:
        return bool(self.expires_at) and self.expires_at < (now or utcnow())

    # ---- 引用 ----
    def add_usage(self, entity_type: str, entity_id, field_name: Optional[str] = None):
        """记录引用；被引用的文件不再参与过期清理。"""
        self.usage_info = usage.add_usage(self.usage_info, entity_type, entity_id, field_name)
        self.mark_persistent()

    def remove_usage(self, entity_type: str, entity_id, field_name: Optional[str] = None):
        """移除引用；不会重新标记为临时，也不会触发删除。"""
        self.usage_info = usage.remove_usage(self.usage_info, entity_type, entity_id, field_name)

    def is_used_in_field(self, entity_type: str, entity_id, field_name: str) -> bool:
        return usage.is_used_in_field(self.usage_info, entity_type, entity_id, field_name)

    def is_used_in(self, entity_type: str, entity_id) -> bool:
        return usage.is_used_in(self.usage_info, entity_type, entity_id)

    @property
    def usage_count(self) -> int:
        return usage.usage_count(self.usage_info)

    @property
    def has_usage(self) -> bool:
        return usage.has_usage(self.usage_info)

    # ---- metadata ----
    def update_meta(self, **values):
        self.meta = {**(self.meta or {}), **values}

    def to_dict(self):
        return {
            "id": self.id,
            "content_hash": self.content_hash,
            "original_name": self.original_name,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
            "storage_dir": self.storage_dir,
            "stored_name": self.stored_name,
            "full_path": self.full_path,
            "public_url": self.public_url,
            "is_public": self.is_public,
            "thumbnail_path": self.thumbnail_path,
            "metadata": self.meta or {},
            "usage_info": self.usage_info or {},
            "usage_count": self.usage_count,
            "uploaded_by": self.uploaded_by,
            "is_temporary": self.is_temporary,
            "expires_at": datetime_to_iso(self.expires_at),
            "deleted_at": datetime_to_iso(self.deleted_at),
            "state": self.lifecycle_state.value,
            "physically_deleted": self.physically_deleted,
            "created_at": datetime_to_iso(self.created_at),
        }
