# -*- coding: utf-8 -*-
from services.deletion_service import DeletionService
from services.ingest_service import IngestService, OwnerContext
from services.reconciliation_service import (
    OwnerPayloadRegistry,
    ReconciliationService,
    strip_file_references,
)


def test_strip_handles_ids_and_descriptors_at_any_depth():
    payload = {
        "title": "Trip",
        "attachments": [5, "7", {"id": 5, "name": "a.pdf"}],
        "sections": [
            {"photoAttachments": [{"id": "5"}, {"id": 6}], "notes": [5]},
        ],
        "meta": {"receipt_attachments": ["5"]},
    }

    cleaned, removed = strip_file_references(payload, 5)

    assert removed == 4
    assert cleaned == {
        "title": "Trip",
        "attachments": ["7"],
        "sections": [{"photoAttachments": [{"id": 6}], "notes": [5]}],
        "meta": {"receipt_attachments": []},
    }
    # 入参不被修改
    assert payload["attachments"] == [5, "7", {"id": 5, "name": "a.pdf"}]


def test_strip_ignores_booleans():
    cleaned, removed = strip_file_references({"attachments": [True, 1]}, 1)
    assert removed == 1
    assert cleaned == {"attachments": [True]}


def test_cleanup_orphaned_reference_saves_cleaned_payload():
    store = {"12": {"attachments": [3, 4]}}
    registry = OwnerPayloadRegistry()
    registry.register("report", store.get, store.__setitem__)

    assert "report" in registry
    assert ReconciliationService.cleanup_orphaned_reference(3, "report", "12", registry) is True
    assert store["12"] == {"attachments": [4]}

    # 已经不存在的引用：不保存，返回 False
    assert ReconciliationService.cleanup_orphaned_reference(3, "report", "12", registry) is False


def test_cleanup_orphaned_reference_without_handler_or_payload():
    registry = OwnerPayloadRegistry()
    assert ReconciliationService.cleanup_orphaned_reference(3, "report", 1, registry) is False

    registry.register("report", lambda entity_id: None, lambda *_: None)
    assert ReconciliationService.cleanup_orphaned_reference(3, "report", 1, registry) is False

    registry.unregister("report")
    assert "report" not in registry


def test_registry_is_attached_to_app(app):
    assert isinstance(app.extensions["owner_payloads"], OwnerPayloadRegistry)


def test_find_potential_orphaned_references(app, pdf_bytes):
    attachment = IngestService.ingest(
        pdf_bytes, "a.pdf", "application/pdf",
        owner=OwnerContext("report", 12, "receipt"), target_dir="reports/2025/a",
    )
    IngestService.ingest(pdf_bytes, "b.pdf", "application/pdf", target_dir="reports/2025/a")
    DeletionService.delete(attachment.id, force=True)

    refs = ReconciliationService.find_potential_orphaned_references()

    assert len(refs) == 1
    assert refs[0]["file_id"] == attachment.id
    assert refs[0]["entity_type"] == "report"
    assert refs[0]["entity_id"] == "12"
    assert refs[0]["fields"] == ["receipt"]
    assert refs[0]["deleted_at"] is not None
