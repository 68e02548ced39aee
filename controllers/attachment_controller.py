# -*- coding: utf-8 -*-
"""附件接口：上传、查询、删除、引用登记、图片编辑、批量解析。

鉴权由部署方的网关 / 中间件负责，这里只做参数解析和服务调用。
"""

from __future__ import annotations

import json
import logging

from flask import Blueprint, current_app, request

from repositories.attachment_repository import AttachmentRepository
from services.deletion_service import DeletionService
from services.image_edit_service import ImageEditService
from services.ingest_service import IngestOptions, IngestService, OwnerContext
from services.lookup_service import LookupService
from services.reconciliation_service import ReconciliationService
from services.usage_service import UsageService
from utils.exceptions import BizError, NotFoundError
from utils.response import json_response

logger = logging.getLogger(__name__)

attachment_bp = Blueprint("attachment", __name__, url_prefix="/api/attachments")


@attachment_bp.errorhandler(BizError)
def _biz_error(e: BizError):
    return json_response(code=e.code, message=e.message, data=e.data)


def _as_bool(value, default=False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _owner_from(data) -> OwnerContext | None:
    entity_type = data.get("entity_type")
    entity_id = data.get("entity_id")
    if not entity_type or entity_id in (None, ""):
        return None
    return OwnerContext(entity_type, str(entity_id), data.get("field_name") or None)


def _request_data():
    # DELETE 请求的参数可能在 body 里，也可能在 query string 里
    data = dict(request.args)
    data.update(request.get_json(silent=True) or {})
    return data


@attachment_bp.post("/upload")
def upload():
    files = request.files.getlist("files") or request.files.getlist("file")
    if not files:
        raise BizError("没有需要上传的文件")

    form = request.form
    try:
        raw_options = json.loads(form.get("options") or "{}")
    except ValueError:
        raise BizError("options 不是合法的 JSON") from None
    if not isinstance(raw_options, dict):
        raise BizError("options 必须是对象")

    is_public = form.get("is_public", raw_options.get("is_public"))
    options = IngestOptions(
        force_new=_as_bool(form.get("force_new", raw_options.get("force_new"))),
        is_public=None if is_public is None else _as_bool(is_public),
        create_thumbnail=_as_bool(raw_options.get("create_thumbnail"), True),
        optimize=_as_bool(raw_options.get("optimize"), True),
    )
    owner = _owner_from({**raw_options, **form.to_dict()})
    uploaded_by = form.get("uploaded_by") or request.headers.get("X-User-Id")

    uploaded, errors = [], []
    for storage in files:
        try:
            attachment = IngestService.ingest(
                storage.stream,
                storage.filename,
                storage.mimetype,
                owner=owner,
                target_dir=form.get("path") or None,
                options=options,
                uploaded_by=uploaded_by,
            )
        except BizError as e:
            logger.info("Upload of %s rejected: %s", storage.filename, e.message)
            errors.append({"file": storage.filename, "error": e.message, "code": e.code})
            continue
        uploaded.append(attachment.to_dict())

    if not uploaded:
        return json_response(
            code=errors[0]["code"],
            message=errors[0]["error"],
            data={"success": False, "files": [], "errors": errors},
        )
    return json_response(message="上传成功", data={"success": True, "files": uploaded, "errors": errors})


@attachment_bp.get("")
def list_attachments():
    args = request.args
    page = args.get("page", default=1, type=int)
    page_size = min(args.get("page_size", default=50, type=int), 200)
    items, total = AttachmentRepository.list_for_library(
        folder=args.get("folder"),
        usage_filter=args.get("usage"),
        type_filter=args.get("type"),
        search=args.get("search"),
        uploaded_by=args.get("uploaded_by"),
        page=max(page, 1),
        page_size=max(page_size, 1),
    )
    return json_response(
        data={
            "items": [i.to_dict() for i in items],
            "total": total,
            "page": page,
            "page_size": page_size,
        }
    )


@attachment_bp.get("/statistics")
def statistics():
    return json_response(data=AttachmentRepository.statistics())


@attachment_bp.get("/orphaned-references")
def orphaned_references():
    references = ReconciliationService.find_potential_orphaned_references()
    return json_response(data={"items": references, "total": len(references)})


@attachment_bp.post("/resolve")
def resolve():
    data = request.get_json(silent=True) or {}
    ids = data.get("ids") or []
    if not isinstance(ids, list):
        raise BizError("ids 必须是数组")
    base_url = data.get("base_url", request.host_url)
    return json_response(data=LookupService.resolve_by_ids(ids, base_url))


@attachment_bp.get("/<int:attachment_id>")
def get_attachment(attachment_id: int):
    attachment = AttachmentRepository.get_by_id(attachment_id)
    if attachment is None:
        raise NotFoundError(data={"id": attachment_id})
    return json_response(data=attachment.to_dict())


@attachment_bp.delete("/<int:attachment_id>")
def delete_attachment(attachment_id: int):
    data = _request_data()
    force = _as_bool(data.get("force"))
    owner = _owner_from(data)

    if AttachmentRepository.get_by_id(attachment_id) is None:
        # 文件记录已不存在，但实体里可能还留着这个 ID
        if owner is not None:
            registry = current_app.extensions["owner_payloads"]
            if ReconciliationService.cleanup_orphaned_reference(
                attachment_id, owner.entity_type, owner.entity_id, registry
            ):
                return json_response(message="已从实体中移除失效的文件引用", data={"id": attachment_id, "reconciled": True})
        raise NotFoundError(data={"id": attachment_id})

    if owner is not None:
        result = DeletionService.release(
            attachment_id, owner.entity_type, owner.entity_id, owner.field_name, force=force
        )
    else:
        result = DeletionService.delete(attachment_id, force=force)
    return json_response(message="删除成功", data=result.to_dict())


@attachment_bp.post("/<int:attachment_id>/restore")
def restore_attachment(attachment_id: int):
    attachment = DeletionService.restore(attachment_id)
    return json_response(message="恢复成功", data=attachment.to_dict())


def _usage_args():
    data = request.get_json(silent=True) or {}
    file_id = data.get("file_id")
    if file_id is None:
        raise BizError("缺少 file_id")
    try:
        file_id = int(file_id)
    except (TypeError, ValueError):
        raise BizError("file_id 必须为整数") from None
    return file_id, data.get("entity_type"), data.get("entity_id"), data.get("field_name") or None


@attachment_bp.post("/usage")
def add_usage():
    file_id, entity_type, entity_id, field_name = _usage_args()
    attachment = UsageService.add_usage(file_id, entity_type, entity_id, field_name)
    if attachment is None:
        raise NotFoundError(data={"id": file_id})
    return json_response(message="已登记引用", data=attachment.to_dict())


@attachment_bp.delete("/usage")
def remove_usage():
    file_id, entity_type, entity_id, field_name = _usage_args()
    attachment = UsageService.remove_usage(file_id, entity_type, entity_id, field_name)
    if attachment is None:
        raise NotFoundError(data={"id": file_id})
    return json_response(message="已移除引用", data=attachment.to_dict())


@attachment_bp.put("/<int:attachment_id>/edit")
def edit_attachment(attachment_id: int):
    data = request.get_json(silent=True) or {}
    operations = data.get("operations") or []
    if not isinstance(operations, list):
        raise BizError("operations 必须是数组")
    attachment = ImageEditService.apply_edits(
        attachment_id,
        operations,
        data.get("save_mode") or "overwrite",
        owner=_owner_from(data),
    )
    return json_response(message="编辑成功", data=attachment.to_dict())
