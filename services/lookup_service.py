from typing import Any, Dict, Iterable, List, Optional

from flask import current_app

from models.attachment import Attachment
from repositories.attachment_repository import AttachmentRepository
from utils.file_naming import build_public_url, thumbnail_name


class LookupService:
    """业务实体只保存文件 ID，需要完整信息时通过这里批量展开。"""

    @staticmethod
    def _valid_ids(ids: Iterable) -> List[int]:
        valid = []
        for raw in ids or []:
            if isinstance(raw, bool):
                continue
            if isinstance(raw, int):
                valid.append(raw)
            elif isinstance(raw, str) and raw.strip().isdigit():
                valid.append(int(raw.strip()))
        return sorted(set(valid))

    @staticmethod
    def describe(attachment: Attachment, base_url: str = "") -> Dict[str, Any]:
        base = (base_url or "").rstrip("/")
        item = {
            "id": attachment.id,
            "fileName": attachment.original_name,
            "fileType": attachment.mime_type,
            "fileSize": attachment.size_bytes,
            "usageCount": attachment.usage_count,
            "isPublic": bool(attachment.is_public),
        }
        if attachment.physically_deleted:
            item["isDeleted"] = True
            return item

        item["url"] = f"{base}{attachment.public_url}"
        if attachment.thumbnail_path:
            item["thumbnailUrl"] = base + build_public_url(
                current_app.config["ATTACHMENT_PUBLIC_PATH"],
                attachment.storage_dir,
                thumbnail_name(attachment.stored_name),
                is_public=bool(attachment.is_public),
                content_hash=attachment.content_hash,
            )
        return item

    @staticmethod
    def resolve_by_ids(ids: Iterable, base_url: str = "") -> List[Dict[str, Any]]:
        """非数字 ID 忽略，未知 ID 不出现在结果中，结果按 ID 升序。"""

        valid = LookupService._valid_ids(ids)
        if not valid:
            return []
        return [LookupService.describe(item, base_url) for item in AttachmentRepository.get_by_ids(valid)]

    @staticmethod
    def resolve_by_id(attachment_id, base_url: str = "") -> Optional[Dict[str, Any]]:
        items = LookupService.resolve_by_ids([attachment_id], base_url)
        return items[0] if items else None
