from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import PurePosixPath
from typing import Any, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from constants.attachment import AttachmentState
from extensions.content_store import content_store
from models.attachment import Attachment
from repositories.attachment_repository import AttachmentRepository
from services.image_pipeline import ImagePipeline
from utils.datetime_helpers import utcnow
from utils.exceptions import DuplicateConflict, ProcessingError, StorageWriteError, UploadValidationError
from utils.file_naming import (
    build_public_url,
    build_stored_name,
    dedup_key,
    join_storage_path,
    thumbnail_name,
    with_collision_suffix,
)
from utils.path_sanitizer import generate_temp_path, is_path_public, validate_storage_path

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
ORIGINAL_NAME_MAX_LENGTH = 255


@dataclass(frozen=True)
class OwnerContext:
    """引用文件的业务实体（报告、CMS 页面……），field_name 为空表示整实体引用。"""

    entity_type: str
    entity_id: Any
    field_name: Optional[str] = None


@dataclass(frozen=True)
class IngestOptions:
    force_new: bool = False
    is_public: Optional[bool] = None
    create_thumbnail: bool = True
    optimize: bool = True


class IngestService:
    """上传入库：校验 -> 计算 hash -> 去重查找 -> 复用 或 写字节 + 建记录 -> 图片后处理。

    字节总是先于记录提交写入；记录写入失败时，已写入的字节在异常抛出前删除。
    """

    @staticmethod
    def clean_original_name(original_name: Optional[str]) -> str:
        name = PurePosixPath(str(original_name or "").replace("\\", "/")).name.strip()
        name = name.replace("\x00", "")
        return (name or "file")[-ORIGINAL_NAME_MAX_LENGTH:]

    @staticmethod
    def validate_mime(mime_type: Optional[str]) -> str:
        mime = str(mime_type or "").split(";", 1)[0].strip().lower()
        allowed = {m.lower() for m in current_app.config["ATTACHMENT_ALLOWED_MIME_TYPES"]}
        if not mime or mime not in allowed:
            raise UploadValidationError(f"不支持的文件类型: {mime or '未知'}", data={"allowed": sorted(allowed)})
        return mime

    @staticmethod
    def validate_size(size: int) -> None:
        max_size = current_app.config["ATTACHMENT_MAX_SIZE"]
        if size <= 0:
            raise UploadValidationError("文件内容为空")
        if size > max_size:
            raise UploadValidationError(f"文件大小超过限制 {max_size} 字节", data={"max_size": max_size})

    @staticmethod
    def read_and_hash(data) -> Tuple[bytes, str]:
        """读取字节流并计算 sha1，超过大小上限时立即停止读取。"""

        max_size = current_app.config["ATTACHMENT_MAX_SIZE"]
        digest = hashlib.sha1()
        if isinstance(data, (bytes, bytearray, memoryview)):
            payload = bytes(data)
            IngestService.validate_size(len(payload))
            digest.update(payload)
            return payload, digest.hexdigest()

        chunks = []
        total = 0
        while True:
            chunk = data.read(CHUNK_SIZE)
            if not chunk:
                break
            total += len(chunk)
            if total > max_size:
                IngestService.validate_size(total)
            digest.update(chunk)
            chunks.append(chunk)
        IngestService.validate_size(total)
        return b"".join(chunks), digest.hexdigest()

    @staticmethod
    def ingest(
        data,
        original_name: str,
        mime_type: str,
        *,
        owner: Optional[OwnerContext] = None,
        target_dir: Optional[str] = None,
        options: Optional[IngestOptions] = None,
        uploaded_by: Optional[str] = None,
    ) -> Attachment:
        options = options or IngestOptions()
        original_name = IngestService.clean_original_name(original_name)
        mime_type = IngestService.validate_mime(mime_type)
        payload, content_hash = IngestService.read_and_hash(data)

        key = None if options.force_new else dedup_key(content_hash, original_name)
        if key is not None:
            existing = AttachmentRepository.get_by_dedup_key(key)
            if existing is not None:
                return IngestService._reuse(existing, owner)

        return IngestService._store_new(
            payload,
            content_hash,
            original_name,
            mime_type,
            key=key,
            owner=owner,
            target_dir=target_dir,
            options=options,
            uploaded_by=uploaded_by,
        )

    @staticmethod
    def _reuse(existing: Attachment, owner: Optional[OwnerContext]) -> Attachment:
        if owner is not None and owner.field_name and existing.is_used_in_field(
            owner.entity_type, owner.entity_id, owner.field_name
        ):
            raise DuplicateConflict(data={"id": existing.id, "field": owner.field_name})

        if existing.is_soft_deleted:
            existing.restore()
            logger.info("Restored soft-deleted attachment %s on re-upload", existing.id)
        if owner is not None:
            existing.add_usage(owner.entity_type, owner.entity_id, owner.field_name)

        try:
            AttachmentRepository.commit()
        except SQLAlchemyError as exc:
            AttachmentRepository.rollback()
            logger.exception("Failed to record usage on reused attachment %s", existing.id)
            raise StorageWriteError("保存文件记录失败") from exc

        logger.info("Reused attachment %s (hash=%s)", existing.id, existing.content_hash)
        return existing

    @staticmethod
    def _available_name(storage_dir: str, stored_name: str) -> str:
        candidate = stored_name
        counter = 1
        while AttachmentRepository.get_by_full_path(join_storage_path(storage_dir, candidate)) is not None:
            counter += 1
            candidate = with_collision_suffix(stored_name, counter)
        return candidate

    @staticmethod
    def _discard(full_path: str, thumb_path: str) -> None:
        for path in (full_path, thumb_path):
            try:
                content_store.delete(path)
            except StorageWriteError:
                logger.error("Failed to remove bytes after aborted ingest: %s", path)

    @staticmethod
    def _store_new(
        payload: bytes,
        content_hash: str,
        original_name: str,
        mime_type: str,
        *,
        key: Optional[str],
        owner: Optional[OwnerContext],
        target_dir: Optional[str],
        options: IngestOptions,
        uploaded_by: Optional[str],
    ) -> Attachment:
        cfg = current_app.config
        now = utcnow()
        storage_dir = validate_storage_path(target_dir) if target_dir else generate_temp_path(now)
        stored_name = IngestService._available_name(
            storage_dir, build_stored_name(original_name, content_hash, mime_type)
        )
        full_path = join_storage_path(storage_dir, stored_name)
        thumb_path = join_storage_path(storage_dir, thumbnail_name(stored_name))

        content_store.put(full_path, payload)
        try:
            metadata = {}
            size_bytes = len(payload)
            thumbnail_path = None
            if mime_type.startswith("image/"):
                try:
                    processed = ImagePipeline.process_upload(
                        full_path,
                        storage_dir,
                        stored_name,
                        mime_type,
                        create_thumbnail=options.create_thumbnail,
                        optimize=options.optimize,
                    )
                except ProcessingError as exc:
                    logger.warning("Image processing failed for %s: %s", full_path, exc.message)
                    metadata["processing_error"] = exc.message
                else:
                    metadata.update(processed.metadata)
                    thumbnail_path = processed.thumbnail_path
                    if processed.size_bytes:
                        size_bytes = processed.size_bytes

            if key is None:
                metadata["dedup_exempt"] = True
            is_public = options.is_public
            if is_public is None:
                is_public = is_path_public(storage_dir, cfg["ATTACHMENT_PUBLIC_PREFIXES"])
            is_temporary = not target_dir

            attachment = AttachmentRepository.create(
                content_hash=content_hash,
                dedup_key=key,
                original_name=original_name,
                mime_type=mime_type,
                size_bytes=size_bytes,
                storage_dir=storage_dir,
                stored_name=stored_name,
                full_path=full_path,
                public_url=build_public_url(
                    cfg["ATTACHMENT_PUBLIC_PATH"],
                    storage_dir,
                    stored_name,
                    is_public=bool(is_public),
                    content_hash=content_hash,
                ),
                is_public=bool(is_public),
                thumbnail_path=thumbnail_path,
                meta=metadata,
                usage_info={},
                uploaded_by=str(uploaded_by) if uploaded_by is not None else None,
                is_temporary=is_temporary,
                expires_at=now + timedelta(hours=cfg["ATTACHMENT_TEMP_TTL_HOURS"]) if is_temporary else None,
                state=AttachmentState.ACTIVE.value,
            )
            if owner is not None:
                attachment.add_usage(owner.entity_type, owner.entity_id, owner.field_name)
            AttachmentRepository.commit()
        except IntegrityError as exc:
            # 并发上传同一文件：唯一约束冲突后按复用处理
            AttachmentRepository.rollback()
            winner = AttachmentRepository.get_by_dedup_key(key) if key else None
            if AttachmentRepository.get_by_full_path(full_path) is None:
                IngestService._discard(full_path, thumb_path)
            if winner is None:
                logger.error("Catalog insert conflict for %s without a matching row", full_path)
                raise StorageWriteError("保存文件记录失败：唯一约束冲突") from exc
            logger.info("Concurrent ingest of %s resolved to attachment %s", original_name, winner.id)
            return IngestService._reuse(winner, owner)
        except SQLAlchemyError as exc:
            AttachmentRepository.rollback()
            IngestService._discard(full_path, thumb_path)
            logger.exception("Catalog write failed, removed stored bytes %s", full_path)
            raise StorageWriteError("保存文件记录失败") from exc
        except Exception:
            AttachmentRepository.rollback()
            IngestService._discard(full_path, thumb_path)
            logger.exception("Ingest aborted, removed stored bytes %s", full_path)
            raise

        logger.info(
            "Stored attachment %s at %s (%s bytes, temporary=%s)",
            attachment.id, full_path, attachment.size_bytes, attachment.is_temporary,
        )
        return attachment
