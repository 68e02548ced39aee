import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from models.attachment import Attachment
from repositories.attachment_repository import AttachmentRepository
from utils.exceptions import BizError, NotFoundError, StorageWriteError

logger = logging.getLogger(__name__)


class UsageService:
    """按文件 ID 增删引用。文件不存在时返回 None，由调用方决定是否报错。"""

    @staticmethod
    def _require_owner(entity_type, entity_id):
        if not entity_type or entity_id is None or str(entity_id).strip() == "":
            raise BizError("缺少实体类型或实体 ID")

    @staticmethod
    def _commit(attachment: Attachment):
        try:
            AttachmentRepository.commit()
        except SQLAlchemyError as exc:
            AttachmentRepository.rollback()
            logger.exception("Failed to update usage of attachment %s", attachment.id)
            raise StorageWriteError("保存引用信息失败") from exc

    @staticmethod
    def add_usage(attachment_id: int, entity_type: str, entity_id, field_name: Optional[str] = None) -> Optional[Attachment]:
        UsageService._require_owner(entity_type, entity_id)
        attachment = AttachmentRepository.get_by_id(attachment_id)
        if attachment is None:
            return None
        if attachment.physically_deleted:
            raise NotFoundError("文件已被删除，不能再关联", data={"id": attachment_id})

        if attachment.is_soft_deleted:
            attachment.restore()
            logger.info("Attachment %s restored by new usage %s/%s", attachment.id, entity_type, entity_id)
        attachment.add_usage(entity_type, entity_id, field_name)
        UsageService._commit(attachment)
        return attachment

    @staticmethod
    def remove_usage(attachment_id: int, entity_type: str, entity_id, field_name: Optional[str] = None) -> Optional[Attachment]:
        """只移除引用，不会把文件重新标记为临时，也不会触发删除。"""

        UsageService._require_owner(entity_type, entity_id)
        attachment = AttachmentRepository.get_by_id(attachment_id)
        if attachment is None:
            return None
        attachment.remove_usage(entity_type, entity_id, field_name)
        UsageService._commit(attachment)
        return attachment

    @staticmethod
    def list_for_entity(entity_type: str, entity_id) -> List[Attachment]:
        return AttachmentRepository.list_used_in_context(entity_type, entity_id)
