"""ElasticBulk - Elasticsearch 批量写入管道.

这是一个用于可靠地向 Elasticsearch 批量写入文档的 Python 库。

主要功能:
    - BulkCoordinator: 生成批量请求计划，处理超时重试与请求体过大拆分
    - BulkOperationTool: 基于 Elasticsearch 客户端的批量写入工具
    - JsonRequestBody / RawRequestBody: 两种批量请求体编码

使用示例:
    from elasticbulk import BulkOperationTool, BulkOperation, BulkAction

    bulk_tool = BulkOperationTool(es_client)
    result = bulk_tool.bulk(
        "users",
        index=[BulkOperation(BulkAction.INDEX, "1", {"name": "Alice"})],
    )
"""

__version__ = "0.1.0"

# 导出批量操作组件
from elasticbulk.bulk import (
    BulkAction,
    BulkConfig,
    BulkCoordinator,
    BulkErrorItem,
    BulkOperation,
    BulkOperationTool,
    BulkRequestEvent,
    BulkResult,
    JsonRequestBody,
    OversizedDocumentPolicy,
    RawRequestBody,
    RequestBody,
)

# 导出异常
from elasticbulk.bulk.exceptions import (
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
from elasticbulk.exceptions import ElasticBulkError

__all__ = [
    # 版本
    "__version__",
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
    "ElasticBulkError",
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
