# utils/exceptions.py
from typing import Any, Optional
from werkzeug.exceptions import HTTPException


class BizError(HTTPException):
    code: int  # HTTP 状态码
    message: str  # 业务提示
    data: Optional[Any]  # 附加数据

    def __init__(self, message: str = "业务异常", code: int = 400, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(description=message)


class UploadValidationError(BizError):
    """文件大小 / MIME 类型不符合上传策略，无任何副作用。"""

    def __init__(self, message: str = "上传文件校验失败", data: Any = None):
        super().__init__(message, 400, data)


class ImageOperationError(BizError):
    """编辑操作非法（未知操作、参数错误、非图片文件）。"""

    def __init__(self, message: str = "图片编辑操作不合法", data: Any = None):
        super().__init__(message, 400, data)


class NotFoundError(BizError):
    def __init__(self, message: str = "文件不存在", data: Any = None):
        super().__init__(message, 404, data)


class DuplicateConflict(BizError):
    """同一文件已挂在同一实体的同一字段上。"""

    def __init__(self, message: str = "该文件已关联到此字段", data: Any = None):
        super().__init__(message, 409, data)


class ProcessingError(BizError):
    """图片解码 / 编码失败。入库流程中不致命，只记录到 metadata。"""

    def __init__(self, message: str = "图片处理失败", data: Any = None):
        super().__init__(message, 422, data)


class StorageWriteError(BizError):
    """字节写入 / 删除或目录记录写入失败。"""

    def __init__(self, message: str = "文件存储失败", data: Any = None):
        super().__init__(message, 500, data)
