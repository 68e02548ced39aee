# -*- coding: utf-8 -*-
"""图片处理：解码、EXIF 方向校正、缩放、缩略图、旋转、裁剪、重新编码。

只依赖内容存储（content_store），不接触目录记录。入库流程和编辑流程
共用 ``ImagePipeline.create_thumbnail``。
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from flask import current_app
from PIL import Image, ImageOps, UnidentifiedImageError

from constants.attachment import EXIF_ORIENTATION_TAG, IMAGE_FORMATS
from extensions.content_store import content_store
from utils.exceptions import ImageOperationError, ProcessingError
from utils.file_naming import join_storage_path, thumbnail_name

logger = logging.getLogger(__name__)

# EXIF 方向 -> 顺时针旋转角度（镜像方向不处理）
ORIENTATION_ROTATIONS = {3: 180, 6: 90, 8: 270}

_CLOCKWISE_TRANSPOSE = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}


@dataclass(frozen=True)
class RotateOperation:
    degrees: int

    def to_dict(self):
        return {"type": "rotate", "degrees": self.degrees}


@dataclass(frozen=True)
class CropOperation:
    x: int
    y: int
    width: int
    height: int

    def to_dict(self):
        return {"type": "crop", "x": self.x, "y": self.y, "width": self.width, "height": self.height}


Operation = Union[RotateOperation, CropOperation]


@dataclass
class ProcessedImage:
    metadata: Dict[str, Any] = field(default_factory=dict)
    thumbnail_path: Optional[str] = None
    size_bytes: Optional[int] = None  # 主文件被重写后的大小


def _as_int(value, name: str) -> int:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        raise ImageOperationError(f"参数 {name} 必须为数字") from None


def parse_operations(raw: Iterable) -> List[Operation]:
    """解析编辑操作列表。

    支持 ``{"type": "rotate", "degrees": 90}`` / ``{"rotate": 90}`` 以及
    ``{"type": "crop", "x":.., "y":.., "width":.., "height":..}`` /
    ``{"crop": {"x":.., "y":.., "w":.., "h":..}}`` 两种写法。
    """

    operations: List[Operation] = []
    for item in raw or []:
        if isinstance(item, (RotateOperation, CropOperation)):
            operations.append(item)
            continue
        if not isinstance(item, dict):
            raise ImageOperationError("编辑操作格式错误")

        if item.get("type") == "rotate" or "rotate" in item:
            degrees = item.get("degrees", item.get("rotate", 0))
            operations.append(RotateOperation(_as_int(degrees, "degrees")))
        elif item.get("type") == "crop" or "crop" in item:
            box = item["crop"] if isinstance(item.get("crop"), dict) else item
            if "x" not in box or "y" not in box:
                raise ImageOperationError("裁剪操作缺少 x / y")
            width = box.get("width", box.get("w"))
            height = box.get("height", box.get("h"))
            if width is None or height is None:
                raise ImageOperationError("裁剪操作缺少 width / height")
            operations.append(CropOperation(
                _as_int(box["x"], "x"),
                _as_int(box["y"], "y"),
                _as_int(width, "width"),
                _as_int(height, "height"),
            ))
        else:
            raise ImageOperationError(f"未知的编辑操作: {item.get('type') or item}")
    return operations


def decode_image(data: bytes, mime_type: str) -> Image.Image:
    if (mime_type or "").lower() not in IMAGE_FORMATS:
        raise ProcessingError(f"不支持的图片格式: {mime_type}")
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ProcessingError(f"图片解码失败: {exc}") from exc
    return image


def encode_image(image: Image.Image, mime_type: str, quality: int = 85) -> bytes:
    fmt = IMAGE_FORMATS.get((mime_type or "").lower())
    if fmt is None:
        raise ProcessingError(f"不支持的图片格式: {mime_type}")

    if fmt == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    params: Dict[str, Any] = {}
    if fmt in ("JPEG", "WEBP"):
        params["quality"] = quality

    buffer = io.BytesIO()
    try:
        image.save(buffer, format=fmt, **params)
    except (OSError, ValueError, KeyError) as exc:
        raise ProcessingError(f"图片编码失败: {exc}") from exc
    return buffer.getvalue()


def read_orientation(image: Image.Image) -> Optional[int]:
    try:
        value = image.getexif().get(EXIF_ORIENTATION_TAG)
    except (AttributeError, OSError, ValueError):
        return None
    return int(value) if value else None


def rotate(image: Image.Image, degrees: int) -> Image.Image:
    """顺时针旋转。90 的整数倍走无损转置，其余角度扩展画布。"""

    degrees = degrees % 360
    if degrees == 0:
        return image
    if degrees in _CLOCKWISE_TRANSPOSE:
        return image.transpose(_CLOCKWISE_TRANSPOSE[degrees])
    return image.rotate(-degrees, expand=True)


def crop(image: Image.Image, x: int, y: int, width: int, height: int) -> Image.Image:
    """在当前画面坐标系下裁剪；超出边界的部分截掉。"""

    if width <= 0 or height <= 0:
        raise ImageOperationError("裁剪区域的宽高必须大于 0")
    left, top = max(0, x), max(0, y)
    right, bottom = min(image.width, x + width), min(image.height, y + height)
    if right <= left or bottom <= top:
        raise ImageOperationError("裁剪区域超出图片范围")
    return image.crop((left, top, right, bottom))


def auto_orient(image: Image.Image) -> Tuple[Image.Image, Optional[int]]:
    orientation = read_orientation(image)
    degrees = ORIENTATION_ROTATIONS.get(orientation or 1)
    if degrees:
        image = rotate(image, degrees)
    return image, orientation


def downscale(image: Image.Image, max_dimension: int) -> Tuple[Image.Image, bool]:
    """等比缩放到 max_dimension 以内（inset）。"""

    if max(image.size) <= max_dimension:
        return image, False
    resized = image.copy()
    resized.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
    return resized, True


def make_thumbnail(image: Image.Image, size: int) -> Image.Image:
    """裁剪填满 size x size（cover）。"""

    return ImageOps.fit(image, (size, size), Image.Resampling.LANCZOS)


def apply_operations(image: Image.Image, operations: Iterable[Operation]) -> Image.Image:
    """依次作用在当前画面上：旋转之后的裁剪使用旋转后的坐标系。"""

    for operation in operations:
        if isinstance(operation, RotateOperation):
            image = rotate(image, operation.degrees)
        elif isinstance(operation, CropOperation):
            image = crop(image, operation.x, operation.y, operation.width, operation.height)
        else:
            raise ImageOperationError(f"未知的编辑操作: {operation!r}")
    return image


class ImagePipeline:

    @staticmethod
    def create_thumbnail(image: Image.Image, storage_dir: str, stored_name: str, mime_type: str) -> str:
        """生成缩略图并写入 ``storage_dir/thumb_<stored_name>``，返回相对路径。"""

        cfg = current_app.config
        thumb = make_thumbnail(image, cfg["IMAGE_THUMBNAIL_SIZE"])
        data = encode_image(thumb, mime_type, cfg["IMAGE_THUMBNAIL_QUALITY"])
        path = join_storage_path(storage_dir, thumbnail_name(stored_name))
        content_store.put(path, data)
        return path

    @staticmethod
    def process_upload(
        full_path: str,
        storage_dir: str,
        stored_name: str,
        mime_type: str,
        *,
        create_thumbnail: bool = True,
        optimize: bool = True,
    ) -> ProcessedImage:
        """入库时的图片处理。

        解码失败抛 ProcessingError，由调用方记录到 metadata；缩略图失败只记录，
        不影响主文件。存储异常（StorageWriteError）原样抛出。
        """

        cfg = current_app.config
        image = decode_image(content_store.get(full_path), mime_type)
        result = ProcessedImage()
        meta = result.metadata

        image, orientation = auto_orient(image)
        rewrite = False
        if orientation:
            meta["original_orientation"] = orientation
            rewrite = orientation in ORIENTATION_ROTATIONS

        if optimize:
            original_size = image.size
            image, resized = downscale(image, cfg["IMAGE_MAX_DIMENSION"])
            if resized:
                meta["optimized"] = True
                meta["original_width"], meta["original_height"] = original_size
                rewrite = True

        meta["width"], meta["height"] = image.size

        if rewrite:
            data = encode_image(image, mime_type, cfg["IMAGE_JPEG_QUALITY"])
            content_store.put(full_path, data)
            result.size_bytes = len(data)

        if create_thumbnail:
            try:
                result.thumbnail_path = ImagePipeline.create_thumbnail(image, storage_dir, stored_name, mime_type)
                meta["thumbnail"] = thumbnail_name(stored_name)
            except ProcessingError as exc:
                logger.warning("Thumbnail generation failed for %s: %s", full_path, exc.message)
                meta["processing_error"] = exc.message

        return result
