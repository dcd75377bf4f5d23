"""批量操作工具模块.

该模块提供了可靠的 Elasticsearch 批量写入功能，包括：
- 批量索引、创建、更新、删除
- 超时指数退避重试，最后的尝试拆分为单文档请求
- 请求体过大（413）时按字节数自动拆分，超大文档丢弃并告警
- 请求埋点事件订阅
- 流式处理支持（适用于超大数据量）

示例用法:
    >>> from elasticbulk.bulk import BulkOperationTool, BulkAction, BulkOperation
    >>> bulk_tool = BulkOperationTool(es_client)
    >>> result = bulk_tool.bulk(
    ...     "users",
    ...     index=[BulkOperation(BulkAction.INDEX, "1", {"name": "Alice"})],
    ... )
    >>> print(f"请求数: {result.request_count}, 提交: {result.success}")
"""

from .coordinator import BulkCoordinator
from .exceptions import (
    BulkCancelledError,
    BulkDocumentTooLargeError,
    BulkEntityTooLargeError,
    BulkOperationError,
    BulkProcessingError,
    BulkRequestTimeoutError,
    BulkResponseError,
    BulkRetryExhaustedError,
    BulkValidationError,
)
from .models import (
    BulkAction,
    BulkConfig,
    BulkErrorItem,
    BulkOperation,
    BulkRequestEvent,
    BulkResult,
    OversizedDocumentPolicy,
)
from .request_body import JsonRequestBody, RawRequestBody, RequestBody
from .tool import BulkOperationTool

__all__ = [
    # 协调器与工具
    "BulkCoordinator",
    "BulkOperationTool",
    # 请求体
    "RequestBody",
    "JsonRequestBody",
    "RawRequestBody",
    # 模型
    "BulkAction",
    "BulkConfig",
    "BulkErrorItem",
    "BulkOperation",
    "BulkRequestEvent",
    "BulkResult",
    "OversizedDocumentPolicy",
    # 异常
    "BulkOperationError",
    "BulkProcessingError",
    "BulkValidationError",
    "BulkRequestTimeoutError",
    "BulkRetryExhaustedError",
    "BulkEntityTooLargeError",
    "BulkDocumentTooLargeError",
    "BulkResponseError",
    "BulkCancelledError",
]
