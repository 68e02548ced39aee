from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, desc, func, or_, select
from sqlalchemy.exc import IntegrityError

from constants.attachment import AttachmentState
from extensions.database import db
from models.attachment import Attachment
from utils import usage_info as usage


class AttachmentRepository:
    """附件目录（catalog）的持久化操作。

    仓储层只读写目录记录，不接触文件字节；字节由 ``extensions.content_store``
    负责，调用方保证"先写字节、再提交记录"。"""

    @staticmethod
    def create(**kwargs) -> Attachment:
        attachment = Attachment(**kwargs)
        db.session.add(attachment)
        db.session.flush()
        return attachment

    @staticmethod
    def get_by_id(attachment_id: int) -> Optional[Attachment]:
        return db.session.get(Attachment, attachment_id)

    @staticmethod
    def get_by_ids(attachment_ids: Iterable[int]) -> List[Attachment]:
        ids = list(attachment_ids)
        if not ids:
            return []
        stmt = select(Attachment).where(Attachment.id.in_(ids)).order_by(Attachment.id)
        return list(db.session.execute(stmt).scalars().all())

    @staticmethod
    def get_by_dedup_key(key: str) -> Optional[Attachment]:
        stmt = select(Attachment).where(Attachment.dedup_key == key)
        return db.session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def get_by_full_path(full_path: str) -> Optional[Attachment]:
        stmt = select(Attachment).where(Attachment.full_path == full_path)
        return db.session.execute(stmt).scalar_one_or_none()

    # ---- 清理用查询 ----
    @staticmethod
    def get_for_sweep(attachment_id: int) -> Optional[Attachment]:
        """从数据库重新读取并加行锁（SQLite 下忽略 FOR UPDATE），覆盖会话里的旧值。"""

        stmt = (
            select(Attachment)
            .where(Attachment.id == attachment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return db.session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def list_expired_temporary(now: datetime) -> List[Attachment]:
        stmt = select(Attachment).where(
            Attachment.is_temporary == True,  # noqa: E712
            Attachment.expires_at.is_not(None),
            Attachment.expires_at < now,
            Attachment.state != AttachmentState.PURGED.value,
        )
        return list(db.session.execute(stmt).scalars().all())

    @staticmethod
    def list_orphaned_temporary(now: datetime, min_age_hours: int) -> List[Attachment]:
        """没有任何引用、且上传已超过 ``min_age_hours`` 的临时文件。"""

        threshold = now - timedelta(hours=min_age_hours)
        stmt = select(Attachment).where(
            Attachment.is_temporary == True,  # noqa: E712
            Attachment.created_at < threshold,
            Attachment.state != AttachmentState.PURGED.value,
        )
        # usage_info 的两种形态无法可移植地用 SQL 判空，放到内存里过滤
        candidates = db.session.execute(stmt).scalars().all()
        return [item for item in candidates if not usage.has_usage(item.usage_info)]

    @staticmethod
    def list_soft_deleted_past_grace(now: datetime, grace_period_hours: int) -> List[Attachment]:
        threshold = now - timedelta(hours=grace_period_hours)
        stmt = select(Attachment).where(
            Attachment.state == AttachmentState.SOFT_DELETED.value,
            Attachment.deleted_at.is_not(None),
            Attachment.deleted_at < threshold,
        )
        return list(db.session.execute(stmt).scalars().all())

    @staticmethod
    def list_purged_with_usage() -> List[Attachment]:
        stmt = select(Attachment).where(Attachment.state == AttachmentState.PURGED.value).order_by(Attachment.id)
        return [item for item in db.session.execute(stmt).scalars().all() if usage.has_usage(item.usage_info)]

    @staticmethod
    def list_used_in_context(entity_type: str, entity_id) -> List[Attachment]:
        stmt = select(Attachment).where(
            Attachment.state != AttachmentState.PURGED.value
        ).order_by(Attachment.created_at)
        return [
            item for item in db.session.execute(stmt).scalars().all()
            if usage.is_used_in(item.usage_info, entity_type, entity_id)
        ]

    # ---- 媒体库 ----
    @staticmethod
    def list_for_library(
        folder: Optional[str] = None,
        usage_filter: Optional[str] = None,
        type_filter: Optional[str] = None,
        search: Optional[str] = None,
        uploaded_by: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ):
        conditions = [Attachment.state == AttachmentState.ACTIVE.value]
        if folder:
            conditions.append(Attachment.storage_dir.like(f"{folder.strip('/')}%"))
        if type_filter == "images":
            conditions.append(Attachment.mime_type.like("image/%"))
        elif type_filter == "pdfs":
            conditions.append(Attachment.mime_type == "application/pdf")
        elif type_filter == "documents":
            conditions.append(or_(
                Attachment.mime_type.like("application/msword%"),
                Attachment.mime_type.like("application/vnd.%"),
                Attachment.mime_type == "text/plain",
            ))
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(or_(Attachment.original_name.ilike(pattern), Attachment.stored_name.ilike(pattern)))
        if uploaded_by:
            conditions.append(Attachment.uploaded_by == str(uploaded_by))

        stmt = select(Attachment).where(and_(*conditions)).order_by(desc(Attachment.created_at))
        items = list(db.session.execute(stmt).scalars().all())
        if usage_filter == "used":
            items = [item for item in items if usage.has_usage(item.usage_info)]
        elif usage_filter == "unused":
            items = [item for item in items if not usage.has_usage(item.usage_info)]

        total = len(items)
        start = (page - 1) * page_size
        return items[start:start + page_size], total

    @staticmethod
    def statistics() -> Dict[str, int]:
        active = Attachment.state == AttachmentState.ACTIVE.value

        def _count(*conditions) -> int:
            return db.session.execute(select(func.count(Attachment.id)).where(*conditions)).scalar() or 0

        total_size = db.session.execute(select(func.sum(Attachment.size_bytes)).where(active)).scalar() or 0
        return {
            "total_files": _count(active),
            "total_size": int(total_size),
            "temporary_files": _count(active, Attachment.is_temporary == True),  # noqa: E712
            "permanent_files": _count(active, Attachment.is_temporary == False),  # noqa: E712
            "soft_deleted_files": _count(Attachment.state == AttachmentState.SOFT_DELETED.value),
            "purged_files": _count(Attachment.state == AttachmentState.PURGED.value),
        }

    @staticmethod
    def delete(attachment: Attachment) -> None:
        db.session.delete(attachment)
        db.session.flush()

    @staticmethod
    def commit():
        try:
            db.session.commit()
        except IntegrityError as exc:  # pragma: no cover - pass through for service handling
            db.session.rollback()
            raise exc

    @staticmethod
    def rollback():
        db.session.rollback()
