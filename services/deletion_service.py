# -*- coding: utf-8 -*-
"""
deletion_service.py
--------------------------------------------------------------------
删除与垃圾回收。

状态机：active -> soft_deleted -> purged
- delete(force)：强制删除，或文件上传不久（recency window 内，视为误传）时直接物理删除；
  否则只做软删除，字节保留，可在宽限期内恢复。
- physically_delete：尽力删除主文件和缩略图字节；仍有引用的记录标记为 purged 并保留，
  否则整行删除。
- cleanup：定时清理过期临时文件、无引用的临时文件、超过宽限期的软删除文件。
  逐条处理，单条失败不影响其余记录；所有操作幂等，可重复执行。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from constants.attachment import DeleteOutcome
from extensions.content_store import content_store
from models.attachment import Attachment
from repositories.attachment_repository import AttachmentRepository
from utils.datetime_helpers import utcnow
from utils.exceptions import BizError, NotFoundError, StorageWriteError

logger = logging.getLogger(__name__)


@dataclass
class DeleteResult:
    attachment_id: int
    outcome: DeleteOutcome
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.attachment_id,
            "outcome": self.outcome.value,
            "soft_deleted": self.outcome is DeleteOutcome.SOFT_DELETED,
            "physically_deleted": self.outcome in (DeleteOutcome.PURGED, DeleteOutcome.REMOVED),
            "issues": list(self.issues),
        }


@dataclass
class CleanupAction:
    attachment_id: int
    reason: str
    full_path: str


@dataclass
class CleanupReport:
    """一次清理的汇总结果。"""

    dry_run: bool
    expired_temporary: int = 0
    orphaned_temporary: int = 0
    soft_deleted_expired: int = 0
    rows_removed: int = 0
    rows_purged: int = 0
    failed: int = 0
    issues: List[str] = field(default_factory=list)
    actions: List[CleanupAction] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.expired_temporary + self.orphaned_temporary + self.soft_deleted_expired

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "expired_temporary": self.expired_temporary,
            "orphaned_temporary": self.orphaned_temporary,
            "soft_deleted_expired": self.soft_deleted_expired,
            "processed": self.processed,
            "rows_removed": self.rows_removed,
            "rows_purged": self.rows_purged,
            "failed": self.failed,
            "issues": list(self.issues),
            "actions": [action.__dict__ for action in self.actions],
        }


class DeletionService:

    @staticmethod
    def _get(attachment_id: int) -> Attachment:
        attachment = AttachmentRepository.get_by_id(attachment_id)
        if attachment is None:
            raise NotFoundError(data={"id": attachment_id})
        return attachment

    @staticmethod
    def _commit(action: str, attachment_id):
        try:
            AttachmentRepository.commit()
        except SQLAlchemyError as exc:
            AttachmentRepository.rollback()
            logger.exception("Failed to %s attachment %s", action, attachment_id)
            raise StorageWriteError("保存文件记录失败") from exc

    @staticmethod
    def is_recent(attachment: Attachment, now: Optional[datetime] = None) -> bool:
        window = timedelta(seconds=current_app.config["ATTACHMENT_RECENCY_WINDOW_SECONDS"])
        created_at = attachment.created_at or utcnow()
        return (now or utcnow()) - created_at < window

    @staticmethod
    def delete(attachment_id: int, force: bool = False, now: Optional[datetime] = None) -> DeleteResult:
        attachment = DeletionService._get(attachment_id)
        if attachment.physically_deleted:
            return DeleteResult(attachment.id, DeleteOutcome.PURGED)

        if force or DeletionService.is_recent(attachment, now):
            return DeletionService.physically_delete(attachment, now=now)
        return DeletionService.soft_delete(attachment, now=now)

    @staticmethod
    def release(
        attachment_id: int,
        entity_type: str,
        entity_id,
        field_name: Optional[str] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> DeleteResult:
        """实体解除对文件的引用；没有其他引用时再按 delete 的规则删除文件。"""

        attachment = DeletionService._get(attachment_id)
        attachment.remove_usage(entity_type, entity_id, field_name)
        if attachment.has_usage or attachment.physically_deleted:
            DeletionService._commit("detach", attachment.id)
            logger.info("Detached %s/%s from attachment %s", entity_type, entity_id, attachment.id)
            outcome = DeleteOutcome.DETACHED if attachment.has_usage else DeleteOutcome.PURGED
            return DeleteResult(attachment.id, outcome)

        if force or DeletionService.is_recent(attachment, now) or not content_store.exists(attachment.full_path):
            return DeletionService.physically_delete(attachment, now=now)
        return DeletionService.soft_delete(attachment, now=now)

    @staticmethod
    def soft_delete(attachment: Attachment, now: Optional[datetime] = None) -> DeleteResult:
        # 重复软删除不刷新 deleted_at，宽限期从第一次删除算起
        if not attachment.is_soft_deleted:
            attachment.soft_delete(now)
            DeletionService._commit("soft delete", attachment.id)
            logger.info("Soft-deleted attachment %s", attachment.id)
        return DeleteResult(attachment.id, DeleteOutcome.SOFT_DELETED)

    @staticmethod
    def restore(attachment_id: int) -> Attachment:
        attachment = DeletionService._get(attachment_id)
        if attachment.physically_deleted:
            raise BizError("文件已被物理删除，无法恢复", 409, data={"id": attachment_id})
        if attachment.is_soft_deleted:
            attachment.restore()
            DeletionService._commit("restore", attachment.id)
            logger.info("Restored attachment %s", attachment.id)
        return attachment

    @staticmethod
    def _remove_bytes(path: Optional[str], issues: List[str]) -> None:
        if not path:
            return
        try:
            content_store.delete(path)
        except StorageWriteError as exc:
            logger.warning("Failed to remove %s: %s", path, exc.message)
            issues.append(f"Failed to remove {path}: {exc.message}")

    @staticmethod
    def physically_delete(attachment: Attachment, now: Optional[datetime] = None) -> DeleteResult:
        """删除字节；有引用则保留记录（purged），否则删除整行。"""

        issues: List[str] = []
        attachment_id = attachment.id
        DeletionService._remove_bytes(attachment.full_path, issues)
        DeletionService._remove_bytes(attachment.thumbnail_path, issues)

        if attachment.has_usage:
            attachment.mark_purged(now)
            outcome = DeleteOutcome.PURGED
        else:
            AttachmentRepository.delete(attachment)
            outcome = DeleteOutcome.REMOVED
        DeletionService._commit("purge", attachment_id)
        logger.info("Physically deleted attachment %s (%s)", attachment_id, outcome.value)
        return DeleteResult(attachment_id, outcome, issues)

    @staticmethod
    def cleanup(now: Optional[datetime] = None, dry_run: bool = False) -> CleanupReport:
        cfg = current_app.config
        now = now or utcnow()
        report = CleanupReport(dry_run=dry_run)

        phases = (
            ("expired_temporary", lambda: AttachmentRepository.list_expired_temporary(now)),
            ("orphaned_temporary", lambda: AttachmentRepository.list_orphaned_temporary(
                now, cfg["ATTACHMENT_ORPHAN_AGE_HOURS"])),
            ("soft_deleted_expired", lambda: AttachmentRepository.list_soft_deleted_past_grace(
                now, cfg["ATTACHMENT_GRACE_PERIOD_HOURS"])),
        )
        seen = set()
        for reason, query in phases:
            ids = [item.id for item in query() if item.id not in seen]
            for attachment_id in ids:
                seen.add(attachment_id)
                DeletionService._sweep_one(attachment_id, reason, now, report)

        logger.info(
            "Attachment cleanup finished: processed=%s removed=%s purged=%s failed=%s dry_run=%s",
            report.processed, report.rows_removed, report.rows_purged, report.failed, dry_run,
        )
        return report

    @staticmethod
    def _still_due(attachment: Attachment, reason: str, now: datetime) -> bool:
        """候选列表查询之后，请求可能已经加了引用或恢复了文件，处理前按原条件再判断一次。"""

        cfg = current_app.config
        if attachment.physically_deleted:
            return False
        if reason == "expired_temporary":
            return attachment.is_temporary and attachment.is_expired(now)
        if reason == "orphaned_temporary":
            threshold = now - timedelta(hours=cfg["ATTACHMENT_ORPHAN_AGE_HOURS"])
            return (
                attachment.is_temporary
                and not attachment.has_usage
                and attachment.created_at is not None
                and attachment.created_at < threshold
            )
        if reason == "soft_deleted_expired":
            threshold = now - timedelta(hours=cfg["ATTACHMENT_GRACE_PERIOD_HOURS"])
            return (
                attachment.is_soft_deleted
                and attachment.deleted_at is not None
                and attachment.deleted_at < threshold
            )
        return False

    @staticmethod
    def _sweep_one(attachment_id: int, reason: str, now: datetime, report: CleanupReport) -> None:
        try:
            attachment = AttachmentRepository.get_for_sweep(attachment_id)
            if attachment is None or not DeletionService._still_due(attachment, reason, now):
                AttachmentRepository.rollback()
                logger.info("Cleanup skipped attachment %s: no longer %s", attachment_id, reason)
                return
            report.actions.append(CleanupAction(attachment.id, reason, attachment.full_path))
            setattr(report, reason, getattr(report, reason) + 1)
            if report.dry_run:
                AttachmentRepository.rollback()
                return
            result = DeletionService.physically_delete(attachment, now=now)
        except Exception as exc:
            AttachmentRepository.rollback()
            report.failed += 1
            report.issues.append(f"Attachment {attachment_id}: {exc}")
            logger.exception("Cleanup failed for attachment %s", attachment_id)
            return

        report.issues.extend(result.issues)
        if result.outcome is DeleteOutcome.REMOVED:
            report.rows_removed += 1
        else:
            report.rows_purged += 1
