# -*- coding: utf-8 -*-
import io
import json
from datetime import timedelta

import pytest

from extensions.database import db
from models.attachment import Attachment

URL = "/api/attachments"


def _upload(client, content, name="receipt.pdf", mime="application/pdf", **form):
    data = {"file": (io.BytesIO(content), name, mime)}
    data.update(form)
    return client.post(f"{URL}/upload", data=data, content_type="multipart/form-data")


def _age(attachment_id, **delta):
    """把记录的创建时间往前推，绕开误传直接删除的时间窗口"""
    attachment = db.session.get(Attachment, attachment_id)
    attachment.created_at = attachment.created_at - timedelta(**delta)
    db.session.commit()


# ----------------------- 上传 -----------------------

def test_upload_with_owner(client, pdf_bytes):
    resp = _upload(
        client, pdf_bytes,
        path="reports/2025/a", entity_type="report", entity_id="12", field_name="receipt",
        uploaded_by="u-1",
    )
    body = resp.get_json()

    assert resp.status_code == 200
    assert body["data"]["success"] is True
    item = body["data"]["files"][0]
    assert item["storage_dir"] == "reports/2025/a"
    assert item["usage_info"] == {"report": {"12": ["receipt"]}}
    assert item["uploaded_by"] == "u-1"
    assert item["is_temporary"] is False
    assert body["data"]["errors"] == []


def test_duplicate_upload_returns_same_record(client, pdf_bytes):
    first = _upload(client, pdf_bytes, path="reports/2025/a").get_json()["data"]["files"][0]
    second = _upload(client, pdf_bytes, path="reports/2025/a").get_json()["data"]["files"][0]
    assert second["id"] == first["id"]


def test_upload_same_field_twice_is_conflict(client, pdf_bytes):
    form = {"path": "reports/2025/a", "entity_type": "report", "entity_id": "1", "field_name": "receipt"}
    _upload(client, pdf_bytes, **form)
    resp = _upload(client, pdf_bytes, **form)
    assert resp.status_code == 409
    assert resp.get_json()["data"]["errors"][0]["code"] == 409


def test_upload_force_new_via_options(client, pdf_bytes):
    first = _upload(client, pdf_bytes, path="reports/2025/a").get_json()["data"]["files"][0]
    second = _upload(
        client, pdf_bytes, path="reports/2025/a", options=json.dumps({"force_new": True})
    ).get_json()["data"]["files"][0]
    assert second["id"] != first["id"]
    assert second["metadata"]["dedup_exempt"] is True


def test_upload_rejects_disallowed_type(client):
    resp = _upload(client, b"<html></html>", name="x.html", mime="text/html", path="reports/2025/a")
    body = resp.get_json()
    assert resp.status_code == 400
    assert body["data"]["success"] is False
    assert body["data"]["errors"][0]["file"] == "x.html"


def test_partial_batch_upload(client, pdf_bytes):
    data = {
        "files": [
            (io.BytesIO(pdf_bytes), "ok.pdf", "application/pdf"),
            (io.BytesIO(b"MZ"), "bad.exe", "application/x-msdownload"),
        ],
        "path": "reports/2025/a",
    }
    resp = client.post(f"{URL}/upload", data=data, content_type="multipart/form-data")
    body = resp.get_json()["data"]

    assert resp.status_code == 200
    assert [f["original_name"] for f in body["files"]] == ["ok.pdf"]
    assert [e["file"] for e in body["errors"]] == ["bad.exe"]


def test_upload_without_files(client):
    resp = client.post(f"{URL}/upload", data={"path": "reports/2025/a"})
    assert resp.status_code == 400


def test_upload_with_invalid_options(client, pdf_bytes):
    resp = _upload(client, pdf_bytes, options="{broken")
    assert resp.status_code == 400


def test_upload_without_path_is_temporary(client, pdf_bytes):
    item = _upload(client, pdf_bytes).get_json()["data"]["files"][0]
    assert item["is_temporary"] is True
    assert item["storage_dir"].startswith("temp/")
    assert item["expires_at"] is not None


# ----------------------- 查询 -----------------------

def test_get_attachment_and_not_found(client, pdf_bytes):
    item = _upload(client, pdf_bytes, path="reports/2025/a").get_json()["data"]["files"][0]

    resp = client.get(f"{URL}/{item['id']}")
    assert resp.status_code == 200
    assert resp.get_json()["data"]["full_path"] == item["full_path"]

    missing = client.get(f"{URL}/999")
    assert missing.status_code == 404
    assert missing.get_json()["code"] == 404


def test_library_listing_filters(client, pdf_bytes, make_image):
    _upload(client, pdf_bytes, path="reports/2025/a", entity_type="report", entity_id="1")
    _upload(client, make_image(), name="p.png", mime="image/png", path="gallery/summer")

    images = client.get(f"{URL}?type=images").get_json()["data"]
    assert [i["original_name"] for i in images["items"]] == ["p.png"]

    unused = client.get(f"{URL}?usage=unused").get_json()["data"]
    assert unused["total"] == 1
    assert unused["items"][0]["original_name"] == "p.png"

    in_folder = client.get(f"{URL}?folder=reports").get_json()["data"]
    assert [i["original_name"] for i in in_folder["items"]] == ["receipt.pdf"]


def test_statistics(client, pdf_bytes):
    _upload(client, pdf_bytes, path="reports/2025/a")
    _upload(client, pdf_bytes, name="tmp.pdf")

    stats = client.get(f"{URL}/statistics").get_json()["data"]
    assert stats["total_files"] == 2
    assert stats["temporary_files"] == 1
    assert stats["permanent_files"] == 1
    assert stats["total_size"] == 2 * len(pdf_bytes)


def test_resolve_ids(client, pdf_bytes):
    item = _upload(client, pdf_bytes, path="downloads/general").get_json()["data"]["files"][0]

    resp = client.post(f"{URL}/resolve", json={"ids": [item["id"], "x", 404], "base_url": "https://cdn.example.com"})
    data = resp.get_json()["data"]

    assert [d["id"] for d in data] == [item["id"]]
    assert data[0]["url"] == "https://cdn.example.com" + item["public_url"]


def test_resolve_defaults_to_request_host(client, pdf_bytes):
    item = _upload(client, pdf_bytes, path="downloads/general").get_json()["data"]["files"][0]
    data = client.post(f"{URL}/resolve", json={"ids": [item["id"]]}).get_json()["data"]
    assert data[0]["url"] == "http://localhost" + item["public_url"]


def test_resolve_rejects_non_list(client):
    assert client.post(f"{URL}/resolve", json={"ids": "1,2"}).status_code == 400


# ----------------------- 删除 -----------------------

def test_delete_recent_upload_removes_it(client, pdf_bytes, stored_files):
    item = _upload(client, pdf_bytes, path="reports/2025/a").get_json()["data"]["files"][0]

    data = client.delete(f"{URL}/{item['id']}").get_json()["data"]

    assert data["outcome"] == "removed"
    assert data["physically_deleted"] is True
    assert stored_files() == []


def test_delete_old_upload_soft_deletes_and_restores(client, pdf_bytes, stored_files):
    item = _upload(client, pdf_bytes, path="reports/2025/a").get_json()["data"]["files"][0]
    _age(item["id"], hours=2)

    data = client.delete(f"{URL}/{item['id']}").get_json()["data"]
    assert data["outcome"] == "soft_deleted"
    assert stored_files() == [item["full_path"]]

    restored = client.post(f"{URL}/{item['id']}/restore").get_json()["data"]
    assert restored["state"] == "active"


def test_delete_with_owner_only_detaches(client, pdf_bytes):
    form = {"path": "reports/2025/a", "entity_type": "report", "field_name": "receipt"}
    item = _upload(client, pdf_bytes, entity_id="1", **form).get_json()["data"]["files"][0]
    _upload(client, pdf_bytes, entity_id="2", **form)

    resp = client.delete(f"{URL}/{item['id']}?entity_type=report&entity_id=1&field_name=receipt")
    data = resp.get_json()["data"]

    assert data["outcome"] == "detached"
    usage = client.get(f"{URL}/{item['id']}").get_json()["data"]["usage_info"]
    assert usage == {"report": {"2": ["receipt"]}}


def test_delete_force_via_json_body(client, pdf_bytes):
    item = _upload(
        client, pdf_bytes, path="reports/2025/a", entity_type="report", entity_id="1"
    ).get_json()["data"]["files"][0]
    _age(item["id"], days=2)

    data = client.delete(f"{URL}/{item['id']}", json={"force": True}).get_json()["data"]
    assert data["outcome"] == "purged"

    refs = client.get(f"{URL}/orphaned-references").get_json()["data"]
    assert refs["total"] == 1
    assert refs["items"][0]["entity_id"] == "1"


def test_delete_missing_file_reconciles_owner_payload(app, client):
    reports = {"5": {"title": "Trip", "attachments": [77, 78]}}
    app.extensions["owner_payloads"].register("report", reports.get, reports.__setitem__)

    resp = client.delete(f"{URL}/77", json={"entity_type": "report", "entity_id": 5})

    assert resp.status_code == 200
    assert resp.get_json()["data"]["reconciled"] is True
    assert reports["5"]["attachments"] == [78]


def test_delete_missing_file_without_owner(client):
    assert client.delete(f"{URL}/77").status_code == 404


def test_restore_missing(client):
    assert client.post(f"{URL}/77/restore").status_code == 404


# ----------------------- 引用 -----------------------

def test_usage_endpoints(client, pdf_bytes):
    item = _upload(client, pdf_bytes).get_json()["data"]["files"][0]
    payload = {"file_id": item["id"], "entity_type": "page", "entity_id": 3}

    added = client.post(f"{URL}/usage", json=payload).get_json()["data"]
    assert added["usage_info"] == {"page": ["3"]}
    assert added["is_temporary"] is False

    removed = client.delete(f"{URL}/usage", json=payload).get_json()["data"]
    assert removed["usage_info"] == {}
    assert removed["state"] == "active"


@pytest.mark.parametrize(
    "payload, status",
    [
        ({"entity_type": "page", "entity_id": 3}, 400),
        ({"file_id": "abc", "entity_type": "page", "entity_id": 3}, 400),
        ({"file_id": 1, "entity_id": 3}, 400),
        ({"file_id": 404, "entity_type": "page", "entity_id": 3}, 404),
    ],
)
def test_usage_endpoint_errors(client, payload, status):
    assert client.post(f"{URL}/usage", json=payload).status_code == status


# ----------------------- 编辑 -----------------------

def test_edit_endpoint(client, make_image):
    item = _upload(
        client, make_image(200, 100), name="p.png", mime="image/png", path="gallery/summer"
    ).get_json()["data"]["files"][0]

    resp = client.put(f"{URL}/{item['id']}/edit", json={"operations": [{"type": "rotate", "degrees": 90}]})
    data = resp.get_json()["data"]

    assert resp.status_code == 200
    assert data["id"] == item["id"]
    assert (data["metadata"]["width"], data["metadata"]["height"]) == (100, 200)


def test_edit_endpoint_copy_mode(client, make_image):
    item = _upload(
        client, make_image(), name="p.png", mime="image/png", path="gallery/summer",
        entity_type="page", entity_id="1", field_name="hero",
    ).get_json()["data"]["files"][0]

    data = client.put(
        f"{URL}/{item['id']}/edit",
        json={
            "operations": [{"crop": {"x": 0, "y": 0, "w": 10, "h": 10}}],
            "save_mode": "copy",
            "entity_type": "page",
            "entity_id": "1",
            "field_name": "hero",
        },
    ).get_json()["data"]

    assert data["id"] != item["id"]
    assert data["usage_info"] == {"page": {"1": ["hero"]}}


def test_edit_endpoint_rejects_pdf(client, pdf_bytes):
    item = _upload(client, pdf_bytes, path="reports/2025/a").get_json()["data"]["files"][0]
    resp = client.put(f"{URL}/{item['id']}/edit", json={"operations": [{"rotate": 90}]})
    assert resp.status_code == 400


def test_request_id_is_echoed(client):
    resp = client.get(f"{URL}/statistics", headers={"X-Request-ID": "abc-123"})
    assert resp.headers["X-Request-ID"] == "abc-123"
