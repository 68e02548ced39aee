import io
from pathlib import Path

import pytest
from PIL import Image

from app import create_app
from extensions.database import db


@pytest.fixture
def app(tmp_path):
    """每个测试一个独立的 app：内存 SQLite + 临时存储目录"""
    app = create_app(
        "testing",
        {
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "ATTACHMENT_STORAGE_DIR": str(tmp_path / "storage"),
            "LOG_DIR": str(tmp_path / "logs"),
        },
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def storage_root(app):
    return Path(app.config["ATTACHMENT_STORAGE_DIR"])


@pytest.fixture
def stored_files(storage_root):
    """列出存储目录下的全部文件（相对路径）"""
    def _list():
        if not storage_root.exists():
            return []
        return sorted(p.relative_to(storage_root).as_posix() for p in storage_root.rglob("*") if p.is_file())
    return _list


@pytest.fixture
def make_image():
    """生成图片字节；split=True 时左半红、右半蓝"""
    def _make(width=64, height=32, fmt="PNG", color=(200, 30, 30), orientation=None, split=False):
        image = Image.new("RGB", (width, height), color)
        if split:
            image.paste((0, 0, 255), (width // 2, 0, width, height))
        buf = io.BytesIO()
        params = {}
        if orientation is not None:
            exif = Image.Exif()
            exif[0x0112] = orientation
            params["exif"] = exif.tobytes()
        image.save(buf, format=fmt, **params)
        return buf.getvalue()
    return _make


@pytest.fixture
def pdf_bytes():
    return b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\ntrailer << /Root 1 0 R >>\n%%EOF\n"
