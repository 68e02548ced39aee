"""Content store: put/get/delete of raw bytes under a validated relative path.

The store knows nothing about catalog rows or ownership. Paths handed to it are
already sanitized storage paths (``storage_dir/stored_name``); the local backend
still refuses anything that would resolve outside its root.
"""
from __future__ import annotations

import mimetypes
import os
import uuid
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from flask import current_app

from utils.exceptions import NotFoundError, StorageWriteError


_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def _split_parts(relative_path: str) -> list[str]:
    raw = str(relative_path or "").replace("\\", "/").lstrip("/")
    parts = [p for p in raw.split("/") if p]
    if not parts:
        raise ValueError("empty storage path")
    if any(p in {".", ".."} or "\x00" in p for p in parts):
        raise ValueError("invalid storage path")
    return parts


class LocalContentStore:
    """Filesystem backend rooted at one base directory."""

    def __init__(self, root) -> None:
        self.root = Path(str(root)).expanduser().resolve()

    def _resolve(self, relative_path: str) -> Path:
        target = self.root.joinpath(*_split_parts(relative_path)).resolve()
        if not target.is_relative_to(self.root) or target == self.root:
            raise ValueError("storage path escapes the storage root")
        return target

    def local_path(self, relative_path: str) -> Optional[Path]:
        try:
            return self._resolve(relative_path)
        except ValueError:
            return None

    def put(self, relative_path: str, data: bytes) -> None:
        try:
            target = self._resolve(relative_path)
        except ValueError as exc:
            raise StorageWriteError(f"非法存储路径: {relative_path}") from exc

        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as exc:
            if tmp.exists():
                tmp.unlink()
            raise StorageWriteError(f"写入文件失败: {relative_path}") from exc

    def get(self, relative_path: str) -> bytes:
        try:
            return self._resolve(relative_path).read_bytes()
        except (ValueError, FileNotFoundError, IsADirectoryError) as exc:
            raise NotFoundError("文件内容不存在") from exc
        except OSError as exc:
            raise StorageWriteError(f"读取文件失败: {relative_path}") from exc

    def exists(self, relative_path: str) -> bool:
        path = self.local_path(relative_path)
        return path is not None and path.is_file()

    def delete(self, relative_path: str) -> bool:
        """删除文件；文件不存在时返回 False（幂等）。"""

        path = self.local_path(relative_path)
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageWriteError(f"删除文件失败: {relative_path}") from exc
        self._prune_empty_dirs(path.parent)
        return True

    def _prune_empty_dirs(self, directory: Path) -> None:
        while directory != self.root and directory.is_relative_to(self.root):
            try:
                directory.rmdir()
            except OSError:
                # 目录非空或并发写入中
                return
            directory = directory.parent


class S3ContentStore:
    """S3 compatible backend (AWS, MinIO, OSS S3 gateway)."""

    def __init__(self, client, bucket: str, prefix: str = "") -> None:
        self.client = client
        self.bucket = bucket
        self.prefix = str(prefix or "").strip("/")

    def _key(self, relative_path: str) -> str:
        key = "/".join(_split_parts(relative_path))
        return f"{self.prefix}/{key}" if self.prefix else key

    def local_path(self, relative_path: str) -> Optional[Path]:
        return None

    def put(self, relative_path: str, data: bytes) -> None:
        content_type = mimetypes.guess_type(relative_path)[0] or "application/octet-stream"
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=self._key(relative_path),
                Body=data,
                ContentType=content_type,
            )
        except (ValueError, ClientError, BotoCoreError) as exc:
            raise StorageWriteError(f"写入文件失败: {relative_path}") from exc

    def get(self, relative_path: str) -> bytes:
        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=self._key(relative_path))
        except ValueError as exc:
            raise NotFoundError("文件内容不存在") from exc
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                raise NotFoundError("文件内容不存在") from exc
            raise StorageWriteError(f"读取文件失败: {relative_path}") from exc
        except BotoCoreError as exc:
            raise StorageWriteError(f"读取文件失败: {relative_path}") from exc
        return resp["Body"].read()

    def exists(self, relative_path: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self._key(relative_path))
        except ValueError:
            return False
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return False
            raise StorageWriteError(f"读取文件失败: {relative_path}") from exc
        return True

    def delete(self, relative_path: str) -> bool:
        if not self.exists(relative_path):
            return False
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key(relative_path))
        except (ClientError, BotoCoreError) as exc:
            raise StorageWriteError(f"删除文件失败: {relative_path}") from exc
        return True


def create_s3_client(cfg):
    session = boto3.session.Session(
        aws_access_key_id=cfg.get("AWS_ACCESS_KEY") or None,
        aws_secret_access_key=cfg.get("AWS_SECRET_KEY") or None,
        region_name=cfg.get("AWS_REGION_NAME") or "us-east-1",
    )
    config = Config(
        signature_version=cfg.get("AWS_SIGNATURE_VERSION") or "s3v4",
        s3={"addressing_style": "path"},
    )
    return session.client("s3", endpoint_url=cfg.get("AWS_ENDPOINT_URL") or None, config=config)


class ContentStore:
    """按配置选择存储后端，挂在 ``app.extensions`` 上。"""

    EXTENSION_KEY = "content_store"

    def init_app(self, app) -> None:
        backend_kind = str(app.config.get("ATTACHMENT_STORAGE_BACKEND") or "local").strip().lower()
        if backend_kind == "s3":
            bucket = app.config.get("ATTACHMENT_S3_BUCKET")
            if not bucket:
                raise RuntimeError("ATTACHMENT_S3_BUCKET is required for the s3 storage backend")
            backend = S3ContentStore(
                create_s3_client(app.config),
                bucket,
                app.config.get("ATTACHMENT_S3_PREFIX", ""),
            )
        elif backend_kind == "local":
            backend = LocalContentStore(app.config["ATTACHMENT_STORAGE_DIR"])
        else:
            raise RuntimeError(f"unsupported storage backend: {backend_kind}")
        app.extensions[self.EXTENSION_KEY] = backend
        app.logger.info("Content store initialized (%s)", backend_kind)

    @property
    def backend(self):
        try:
            return current_app.extensions[self.EXTENSION_KEY]
        except KeyError:
            raise RuntimeError("Content store is not initialized") from None

    def put(self, relative_path: str, data: bytes) -> None:
        self.backend.put(relative_path, data)

    def get(self, relative_path: str) -> bytes:
        return self.backend.get(relative_path)

    def exists(self, relative_path: str) -> bool:
        return self.backend.exists(relative_path)

    def delete(self, relative_path: str) -> bool:
        return self.backend.delete(relative_path)

    def local_path(self, relative_path: str) -> Optional[Path]:
        return self.backend.local_path(relative_path)


content_store = ContentStore()

__all__ = ["content_store", "LocalContentStore", "S3ContentStore"]
