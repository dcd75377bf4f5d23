"""批量操作工具异常定义模块."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from ..exceptions import ElasticBulkError

if TYPE_CHECKING:
    from .models import BulkErrorItem, BulkOperation

# 服务端 413 错误信息中的最大请求体大小，例如 "exceeded 104857600 bytes"
_MAX_BYTES_PATTERN = re.compile(r"exceeded.(\d+).bytes")


class BulkOperationError(ElasticBulkError):
    """批量操作基础异常类."""

    pass


class BulkProcessingError(BulkOperationError):
    """批量处理过程中的异常.

    例如请求体已经 finalize 后仍继续追加操作。
    """

    pass


class BulkValidationError(BulkOperationError):
    """批量操作验证异常."""

    pass


class BulkRequestTimeoutError(BulkOperationError):
    """批量请求超时异常.

    可重试的瞬时错误，由执行器在网络或网关超时时抛出。
    """

    pass


class BulkRetryExhaustedError(BulkRequestTimeoutError):
    """批量操作重试次数耗尽异常.

    超时重试次数达到 max_retries 后抛出，原始超时异常保存在 __cause__ 中。
    """

    pass


class BulkEntityTooLargeError(BulkOperationError):
    """请求体超过服务端最大限制异常（HTTP 413）.

    Args:
        message: 服务端返回的错误信息
        max_bytes: 已知的最大请求体字节数，未提供时从 message 中解析
    """

    def __init__(self, message: str = "", max_bytes: int | None = None):
        super().__init__(message)
        self.message = message
        self.max_bytes = max_bytes

    def parse_max_bytes(self) -> int:
        """获取服务端允许的最大请求体字节数.

        Returns:
            最大字节数，无法解析时返回 0
        """
        if self.max_bytes:
            return self.max_bytes
        match = _MAX_BYTES_PATTERN.search(self.message or "")
        if match is None:
            return 0
        return int(match.group(1))


class BulkDocumentTooLargeError(BulkOperationError):
    """单个文档序列化后超过最大请求体限制异常.

    仅在 oversized_policy 为 RAISE 时抛出，默认策略下该文档会被丢弃并记录警告。
    """

    def __init__(self, operation: BulkOperation, size: int, limit: int):
        super().__init__(
            f"文档 {operation.doc_id!r} 大小为 {size} 字节，"
            f"超过最大请求体限制 {limit} 字节"
        )
        self.operation = operation
        self.size = size
        self.limit = limit


class BulkResponseError(BulkOperationError):
    """批量响应中包含失败文档异常.

    请求本身成功（HTTP 2xx），但响应的 errors 字段为 true。
    整个调用立即终止，不会对失败文档做选择性重试。

    Attributes:
        response: 原始响应
        errors: 从响应 items 中解析出的失败项列表
    """

    def __init__(self, response: Any, errors: list[BulkErrorItem] | None = None):
        self.response = response
        self.errors = errors or []
        super().__init__(self.get_error_summary())

    def get_error_summary(self) -> str:
        """获取错误摘要."""
        if not self.errors:
            return "批量响应包含错误"
        summary = f"Total errors: {len(self.errors)}\n"
        for i, error in enumerate(self.errors[:10], 1):  # 只显示前10个错误
            summary += (
                f"{i}. [{error.operation.value if error.operation else 'unknown'}] "
                f"Index: {error.index_name}, DocID: {error.doc_id}, "
                f"Status: {error.status}, Reason: {error.error_reason}\n"
            )
        if len(self.errors) > 10:
            summary += f"... and {len(self.errors) - 10} more errors\n"
        return summary


class BulkCancelledError(BulkOperationError):
    """重试等待期间收到取消信号异常."""

    pass
