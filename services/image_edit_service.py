from __future__ import annotations

import hashlib
import logging
from pathlib import PurePosixPath
from typing import Iterable, Optional, Union

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from constants.attachment import AttachmentState, SaveMode
from extensions.content_store import content_store
from models.attachment import Attachment
from repositories.attachment_repository import AttachmentRepository
from services.image_pipeline import ImagePipeline, apply_operations, decode_image, encode_image, parse_operations
from services.ingest_service import IngestService, OwnerContext
from utils.datetime_helpers import datetime_to_iso, utcnow
from utils.exceptions import ImageOperationError, NotFoundError, ProcessingError, StorageWriteError
from utils.file_naming import build_public_url, join_storage_path, thumbnail_name

logger = logging.getLogger(__name__)

EDITED_SUFFIX = "_edited"


class ImageEditService:
    """图片编辑（旋转 / 裁剪），结果覆盖原文件或另存为新附件。"""

    @staticmethod
    def _load_editable(attachment_id: int) -> Attachment:
        attachment = AttachmentRepository.get_by_id(attachment_id)
        if attachment is None or not attachment.is_active:
            raise NotFoundError(data={"id": attachment_id})
        if not attachment.is_image:
            raise ImageOperationError("只能编辑图片文件")
        return attachment

    @staticmethod
    def apply_edits(
        attachment_id: int,
        operations: Iterable,
        save_mode: Union[SaveMode, str] = SaveMode.OVERWRITE,
        owner: Optional[OwnerContext] = None,
    ) -> Attachment:
        try:
            mode = SaveMode(save_mode)
        except ValueError:
            raise ImageOperationError(f"不支持的保存方式: {save_mode}") from None
        ops = parse_operations(operations)
        if not ops:
            raise ImageOperationError("没有需要执行的编辑操作")

        attachment = ImageEditService._load_editable(attachment_id)
        original_bytes = content_store.get(attachment.full_path)
        image = apply_operations(decode_image(original_bytes, attachment.mime_type), ops)
        data = encode_image(image, attachment.mime_type, current_app.config["IMAGE_JPEG_QUALITY"])
        history_entry = {
            "edited_at": datetime_to_iso(utcnow()),
            "operations": [op.to_dict() for op in ops],
            "width": image.width,
            "height": image.height,
        }

        if mode is SaveMode.OVERWRITE:
            return ImageEditService._overwrite(attachment, image, data, original_bytes, history_entry)
        return ImageEditService._save_copy(attachment, image, data, history_entry, owner)

    @staticmethod
    def _overwrite(attachment: Attachment, image, data: bytes, original_bytes: bytes, history_entry) -> Attachment:
        """覆盖原文件。content_hash 保持不变，记录退出去重（见 DESIGN.md）。"""

        content_store.put(attachment.full_path, data)
        thumb_path = attachment.thumbnail_path
        try:
            thumb_path = ImagePipeline.create_thumbnail(
                image, attachment.storage_dir, attachment.stored_name, attachment.mime_type
            )
        except ProcessingError as exc:
            logger.warning("Thumbnail regeneration failed for %s: %s", attachment.id, exc.message)

        history = list((attachment.meta or {}).get("edit_history") or [])
        history.append(history_entry)
        attachment.size_bytes = len(data)
        attachment.thumbnail_path = thumb_path
        attachment.dedup_key = None
        attachment.update_meta(
            width=image.width,
            height=image.height,
            edited=True,
            edit_history=history,
            dedup_exempt=True,
        )
        try:
            AttachmentRepository.commit()
        except SQLAlchemyError as exc:
            AttachmentRepository.rollback()
            try:
                content_store.put(attachment.full_path, original_bytes)
            except StorageWriteError:
                logger.error("Failed to restore original bytes of attachment %s", attachment.id)
            logger.exception("Failed to save edit of attachment %s", attachment.id)
            raise StorageWriteError("保存编辑结果失败") from exc

        logger.info("Overwrote attachment %s with %d edit operation(s)", attachment.id, len(history_entry["operations"]))
        return attachment

    @staticmethod
    def _edited_name(name: str) -> str:
        path = PurePosixPath(name)
        return f"{path.stem}{EDITED_SUFFIX}{path.suffix}"

    @staticmethod
    def _copy_name(original: Attachment) -> str:
        candidate = ImageEditService._edited_name(original.stored_name)
        return IngestService._available_name(original.storage_dir, candidate)

    @staticmethod
    def _save_copy(original: Attachment, image, data: bytes, history_entry, owner: Optional[OwnerContext]) -> Attachment:
        cfg = current_app.config
        content_hash = hashlib.sha1(data).hexdigest()
        stored_name = ImageEditService._copy_name(original)
        full_path = join_storage_path(original.storage_dir, stored_name)
        thumb_path = join_storage_path(original.storage_dir, thumbnail_name(stored_name))

        content_store.put(full_path, data)
        try:
            metadata = {
                "width": image.width,
                "height": image.height,
                "edited": True,
                "edited_from": original.id,
                "edit_history": [history_entry],
                "dedup_exempt": True,
            }
            thumbnail_path = None
            try:
                thumbnail_path = ImagePipeline.create_thumbnail(image, original.storage_dir, stored_name, original.mime_type)
                metadata["thumbnail"] = thumbnail_name(stored_name)
            except ProcessingError as exc:
                metadata["processing_error"] = exc.message

            copy = AttachmentRepository.create(
                content_hash=content_hash,
                dedup_key=None,
                original_name=ImageEditService._edited_name(original.original_name),
                mime_type=original.mime_type,
                size_bytes=len(data),
                storage_dir=original.storage_dir,
                stored_name=stored_name,
                full_path=full_path,
                public_url=build_public_url(
                    cfg["ATTACHMENT_PUBLIC_PATH"],
                    original.storage_dir,
                    stored_name,
                    is_public=original.is_public,
                    content_hash=content_hash,
                ),
                is_public=original.is_public,
                thumbnail_path=thumbnail_path,
                meta=metadata,
                usage_info={},
                uploaded_by=original.uploaded_by,
                is_temporary=False,
                expires_at=None,
                state=AttachmentState.ACTIVE.value,
            )
            if owner is not None:
                # 同一字段只保留一个有效引用
                original.remove_usage(owner.entity_type, owner.entity_id, owner.field_name)
                copy.add_usage(owner.entity_type, owner.entity_id, owner.field_name)
            AttachmentRepository.commit()
        except Exception as exc:
            AttachmentRepository.rollback()
            IngestService._discard(full_path, thumb_path)
            logger.exception("Failed to save edited copy of attachment %s", original.id)
            if isinstance(exc, SQLAlchemyError):
                raise StorageWriteError("保存编辑副本失败") from exc
            raise

        logger.info("Saved edited copy %s of attachment %s", copy.id, original.id)
        return copy
