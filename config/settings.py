# config/settings.py
import os
from dotenv import load_dotenv

from constants.attachment import DEFAULT_ALLOWED_MIME_TYPES
from utils.path_sanitizer import DEFAULT_PUBLIC_PREFIXES

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
load_dotenv(os.path.join(BASE_DIR, ".env"))  # 自动加载环境变量


def _as_bool(val, default=False):
    if val is None:
        return default
    return str(val).lower() in ("1", "true", "yes", "on")


def _as_list(val, default):
    if not val:
        return list(default)
    return [item.strip() for item in str(val).split(",") if item.strip()]


class BaseConfig:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0")
    REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", 5))

    # AWS 配置（仅 s3 存储后端使用）
    AWS_ACCESS_KEY = os.getenv("AWS_ACCESS_KEY")
    AWS_SECRET_KEY = os.getenv("AWS_SECRET_KEY")
    AWS_ENDPOINT_URL = os.getenv("AWS_ENDPOINT_URL")
    AWS_REGION_NAME = os.getenv("AWS_REGION_NAME")
    AWS_SIGNATURE_VERSION = os.getenv("AWS_SIGNATURE_VERSION")

    # 日志相关
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR = os.getenv("LOG_DIR", "./logs")
    LOG_JSON = os.getenv("LOG_JSON", "1") == "1"  # 是否 JSON 格式
    LOG_TO_FILE = _as_bool(os.getenv("LOG_TO_FILE", "1"), True)
    LOG_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", 5 * 1024 * 1024))
    LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", 5))
    APP_NAME = os.getenv("APP_NAME", "attachment-store")

    # ========= 附件存储 =========
    # local / s3
    ATTACHMENT_STORAGE_BACKEND = os.getenv("ATTACHMENT_STORAGE_BACKEND", "local")
    ATTACHMENT_STORAGE_DIR = os.getenv(
        "ATTACHMENT_STORAGE_DIR", os.path.join(BASE_DIR, "storage")
    )
    ATTACHMENT_S3_BUCKET = os.getenv("ATTACHMENT_S3_BUCKET")
    ATTACHMENT_S3_PREFIX = os.getenv("ATTACHMENT_S3_PREFIX", "uploads")
    # publicUrl 的前缀
    ATTACHMENT_PUBLIC_PATH = os.getenv("ATTACHMENT_PUBLIC_PATH", "/uploads")
    # 这些顶级目录下的文件默认公开
    ATTACHMENT_PUBLIC_PREFIXES = _as_list(
        os.getenv("ATTACHMENT_PUBLIC_PREFIXES"), DEFAULT_PUBLIC_PREFIXES
    )
    ATTACHMENT_MAX_SIZE = int(os.getenv("ATTACHMENT_MAX_SIZE", 15 * 1024 * 1024))
    ATTACHMENT_ALLOWED_MIME_TYPES = _as_list(
        os.getenv("ATTACHMENT_ALLOWED_MIME_TYPES"), DEFAULT_ALLOWED_MIME_TYPES
    )
    # 临时上传的有效期
    ATTACHMENT_TEMP_TTL_HOURS = int(os.getenv("ATTACHMENT_TEMP_TTL_HOURS", 24))
    # 上传后多久之内删除视为"误传"，直接物理删除
    ATTACHMENT_RECENCY_WINDOW_SECONDS = int(os.getenv("ATTACHMENT_RECENCY_WINDOW_SECONDS", 300))
    # 软删除宽限期
    ATTACHMENT_GRACE_PERIOD_HOURS = int(os.getenv("ATTACHMENT_GRACE_PERIOD_HOURS", 24))
    # 无引用的临时文件超过多久视为孤儿
    ATTACHMENT_ORPHAN_AGE_HOURS = int(os.getenv("ATTACHMENT_ORPHAN_AGE_HOURS", 24))

    # ========= 图片处理 =========
    IMAGE_MAX_DIMENSION = int(os.getenv("IMAGE_MAX_DIMENSION", 1920))
    IMAGE_THUMBNAIL_SIZE = int(os.getenv("IMAGE_THUMBNAIL_SIZE", 300))
    IMAGE_JPEG_QUALITY = int(os.getenv("IMAGE_JPEG_QUALITY", 85))
    IMAGE_THUMBNAIL_QUALITY = int(os.getenv("IMAGE_THUMBNAIL_QUALITY", 80))

    # ========= 定时清理 =========
    CLEANUP_LOCK_ENABLED = _as_bool(os.getenv("CLEANUP_LOCK_ENABLED"), False)
    CLEANUP_LOCK_TIMEOUT = int(os.getenv("CLEANUP_LOCK_TIMEOUT", 600))
    CLEANUP_LOCK_NAME = os.getenv("CLEANUP_LOCK_NAME", "attachments:cleanup")

    # =========================================


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv("DEV_DATABASE_URI", "sqlite:///" + os.path.join(BASE_DIR, "dev.db"))


class ProductionConfig(BaseConfig):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URI")


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URI", "sqlite:///:memory:")
    LOG_TO_FILE = False
    LOG_JSON = False
    CLEANUP_LOCK_ENABLED = False
    ATTACHMENT_STORAGE_BACKEND = "local"


config_map = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}


def get_config(config_name):
    return config_map.get(config_name, DevelopmentConfig)
