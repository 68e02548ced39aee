# -*- coding: utf-8 -*-
"""
reconciliation_service.py
--------------------------------------------------------------------
附件的 usage_info 与业务实体自身保存的文件 ID 列表是同一事实的两份拷贝，
可能不一致。这里只负责在调用方明确要求时，把失效的文件 ID 从实体数据里移除；
是否失效由调用方判断，不会自动触发。

业务实体的数据通过 OwnerPayloadRegistry 显式注册读写函数，不依赖任何全局状态。
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from repositories.attachment_repository import AttachmentRepository
from utils import usage_info as usage

logger = logging.getLogger(__name__)

ATTACHMENTS_MARKER = "attachments"

PayloadLoader = Callable[[Any], Optional[Any]]
PayloadSaver = Callable[[Any, Any], None]


@dataclass(frozen=True)
class OwnerPayloadHandler:
    load: PayloadLoader
    save: PayloadSaver


class OwnerPayloadRegistry:
    """实体类型 -> (load(entity_id), save(entity_id, payload))。"""

    def __init__(self):
        self._handlers: Dict[str, OwnerPayloadHandler] = {}

    def register(self, entity_type: str, load: PayloadLoader, save: PayloadSaver) -> None:
        self._handlers[str(entity_type)] = OwnerPayloadHandler(load, save)

    def unregister(self, entity_type: str) -> None:
        self._handlers.pop(str(entity_type), None)

    def get(self, entity_type: str) -> Optional[OwnerPayloadHandler]:
        return self._handlers.get(str(entity_type))

    def __contains__(self, entity_type) -> bool:
        return str(entity_type) in self._handlers

    def init_app(self, app) -> None:
        app.extensions["owner_payloads"] = self


def _is_attachment_key(key) -> bool:
    return isinstance(key, str) and key.lower().endswith(ATTACHMENTS_MARKER)


def _matches(item, file_id: str) -> bool:
    if isinstance(item, dict):
        return "id" in item and str(item["id"]) == file_id
    if isinstance(item, (str, int)) and not isinstance(item, bool):
        return str(item) == file_id
    return False


def _strip(node, file_id: str) -> Tuple[Any, int]:
    removed = 0
    if isinstance(node, dict):
        result = {}
        for key, value in node.items():
            if _is_attachment_key(key) and isinstance(value, list):
                kept = [item for item in value if not _matches(item, file_id)]
                removed += len(value) - len(kept)
                value = kept
            value, nested = _strip(value, file_id)
            removed += nested
            result[key] = value
        return result, removed
    if isinstance(node, list):
        items = []
        for item in node:
            item, nested = _strip(item, file_id)
            removed += nested
            items.append(item)
        return items, removed
    return node, 0


def strip_file_references(payload, file_id) -> Tuple[Any, int]:
    """从任意嵌套的实体数据中移除文件 ID。

    只处理键名以 "attachments" 结尾（不区分大小写）的列表字段；列表元素可以是
    ID 本身，也可以是带 ``id`` 的描述对象。不修改入参，返回 (新数据, 移除数量)。
    """

    return _strip(copy.deepcopy(payload), str(file_id))


class ReconciliationService:

    @staticmethod
    def cleanup_orphaned_reference(file_id, entity_type: str, entity_id, registry: OwnerPayloadRegistry) -> bool:
        handler = registry.get(entity_type)
        if handler is None:
            logger.warning("No payload handler registered for entity type %s", entity_type)
            return False

        payload = handler.load(entity_id)
        if payload is None:
            return False
        cleaned, removed = strip_file_references(payload, file_id)
        if not removed:
            return False

        handler.save(entity_id, cleaned)
        logger.info(
            "Removed %d stale reference(s) to file %s from %s/%s", removed, file_id, entity_type, entity_id
        )
        return True

    @staticmethod
    def find_potential_orphaned_references() -> List[Dict[str, Any]]:
        """已物理删除但仍被实体引用的文件。"""

        references = []
        for attachment in AttachmentRepository.list_purged_with_usage():
            for ref in usage.iter_references(attachment.usage_info):
                references.append({
                    "file_id": attachment.id,
                    "file_name": attachment.original_name,
                    "entity_type": ref.entity_type,
                    "entity_id": ref.entity_id,
                    "fields": sorted(ref.fields),
                    "deleted_at": attachment.deleted_at.isoformat() if attachment.deleted_at else None,
                })
        return references
