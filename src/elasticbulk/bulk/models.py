"""批量操作工具数据模型定义模块.

提供批量操作相关的数据模型，包括：
- BulkAction: 批量操作类型枚举
- OversizedDocumentPolicy: 超大文档处理策略
- BulkConfig: 批量操作配置
- BulkOperation: 单个待写入操作
- BulkErrorItem: 批量响应中的失败项
- BulkRequestEvent: 单次批量请求的埋点事件
- BulkResult: 批量操作结果统计
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from elasticsearch.serializer import JSONSerializer

from ..typing import ActionDict, SourceDict
from .exceptions import BulkValidationError

# 与 Elasticsearch 客户端一致的紧凑 JSON 序列化（UTF-8，无空格）
_serializer = JSONSerializer()


def dump_json(data: Any) -> bytes:
    """将对象序列化为紧凑的 JSON 字节串."""
    dumped = _serializer.dumps(data)
    if isinstance(dumped, str):
        dumped = dumped.encode("utf-8")
    return dumped


class BulkAction(Enum):
    """批量操作类型枚举."""

    INDEX = "index"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OversizedDocumentPolicy(Enum):
    """单个文档超过最大请求体限制时的处理策略.

    Attributes:
        DISCARD: 丢弃该文档并记录警告（默认）
        RAISE: 抛出 BulkDocumentTooLargeError
    """

    DISCARD = "discard"
    RAISE = "raise"


@dataclass(frozen=True)
class BulkConfig:
    """批量操作配置模型.

    Attributes:
        max_retries: 超时最大尝试次数，默认 4，必须 >= 1
        last_retry_in_small_chunks: 最后几次重试是否拆分为单文档请求，默认 True
        wait_interval: 每次批量请求成功后的等待时间（秒），用于限流，默认 0
        batch_size: 流式处理与便捷方法的每批次操作数量，默认 500
        oversized_policy: 超大文档处理策略，默认丢弃

    Raises:
        BulkValidationError: 当参数不合法时抛出

    Examples:
        >>> config = BulkConfig(max_retries=5, wait_interval=0.5)
    """

    max_retries: int = 4
    last_retry_in_small_chunks: bool = True
    wait_interval: float = 0.0
    batch_size: int = 500
    oversized_policy: OversizedDocumentPolicy = OversizedDocumentPolicy.DISCARD

    def __post_init__(self) -> None:
        """校验配置参数合法性."""
        if self.max_retries < 1:
            raise BulkValidationError(
                f"max_retries 必须 >= 1，当前值: {self.max_retries}"
            )
        if self.wait_interval < 0:
            raise BulkValidationError(
                f"wait_interval 必须 >= 0，当前值: {self.wait_interval}"
            )
        if self.batch_size < 1:
            raise BulkValidationError(
                f"batch_size 必须 >= 1，当前值: {self.batch_size}"
            )
        if not isinstance(self.oversized_policy, OversizedDocumentPolicy):
            raise BulkValidationError(
                f"oversized_policy 不合法: {self.oversized_policy!r}"
            )


@dataclass(frozen=True)
class BulkOperation:
    """批量操作项数据类.

    入队后不可变。同一批次中允许重复的文档ID，每个操作都会作为独立的
    批量动作发送。

    Attributes:
        action: 操作类型
        doc_id: 文档ID（INDEX/CREATE 可为空，由 ES 自动生成）
        source: 文档源数据（用于 INDEX、CREATE、UPDATE 操作）
        index_name: 索引名称（可选，写入动作元数据的 _index）
        routing: 路由信息（可选）
        retry_on_conflict: 冲突重试次数（用于 UPDATE 操作）
        doc_as_upsert: 文档不存在时是否创建（用于 UPDATE 操作）
        metadata: 额外的动作元数据

    Raises:
        BulkValidationError: 当操作缺少必要字段时抛出
    """

    action: BulkAction
    doc_id: Any = None
    source: SourceDict | None = None
    index_name: str | None = None
    routing: str | None = None
    retry_on_conflict: int | None = None
    doc_as_upsert: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """校验操作项合法性."""
        if not isinstance(self.action, BulkAction):
            raise BulkValidationError(f"不支持的操作类型: {self.action!r}")
        if self.action in (BulkAction.INDEX, BulkAction.CREATE, BulkAction.UPDATE):
            if self.source is None:
                raise BulkValidationError(
                    f"操作类型 {self.action.value} 需要提供 source 数据"
                )
        if self.action in (BulkAction.UPDATE, BulkAction.DELETE):
            if self.doc_id is None:
                raise BulkValidationError(
                    f"操作类型 {self.action.value} 需要提供文档ID"
                )

    def to_action(self) -> ActionDict:
        """生成动作元数据行，例如 {"index": {"_id": 1}}."""
        meta: dict[str, Any] = {}
        if self.doc_id is not None:
            meta["_id"] = self.doc_id
        if self.index_name is not None:
            meta["_index"] = self.index_name
        if self.routing is not None:
            meta["routing"] = self.routing
        if self.action == BulkAction.UPDATE and self.retry_on_conflict is not None:
            meta["retry_on_conflict"] = self.retry_on_conflict
        meta.update(self.metadata)
        return {self.action.value: meta}

    def to_payload(self) -> SourceDict | None:
        """生成数据行，DELETE 操作没有数据行."""
        if self.action == BulkAction.DELETE:
            return None
        if self.action == BulkAction.UPDATE:
            # UPDATE 操作使用 doc 字段而非 _source
            payload: SourceDict = {"doc": self.source}
            if self.doc_as_upsert:
                payload["doc_as_upsert"] = True
            return payload
        return self.source

    def to_bulk_lines(self) -> list[dict[str, Any]]:
        """生成客户端 bulk 接口使用的结构化行列表."""
        payload = self.to_payload()
        if payload is None:
            return [self.to_action()]
        return [self.to_action(), payload]

    def serialize(self) -> bytes:
        """序列化为原始线格式片段: {action}\\n{payload}（不含结尾换行）."""
        piece = dump_json(self.to_action())
        payload = self.to_payload()
        if payload is not None:
            piece += b"\n" + dump_json(payload)
        return piece


@dataclass
class BulkErrorItem:
    """批量操作错误项数据类.

    Attributes:
        index_name: 索引名称
        doc_id: 文档ID
        error_type: 错误类型
        error_reason: 错误原因
        status: HTTP状态码
        caused_by: 根本原因
        operation: 失败的操作类型
    """

    index_name: str
    doc_id: Any
    error_type: str
    error_reason: str
    status: int
    caused_by: str | None = None
    operation: BulkAction | None = None

    @classmethod
    def from_response_item(cls, item: dict[str, Any]) -> "BulkErrorItem | None":
        """从批量响应的单个 item 解析错误项.

        Args:
            item: 响应 items 中的元素，格式类似
                {"index": {"_index": "users", "_id": "1", "status": 400, "error": {...}}}

        Returns:
            错误项，该 item 没有错误时返回 None
        """
        if not item:
            return None
        op_type, info = next(iter(item.items()))
        if not isinstance(info, dict) or not info.get("error"):
            return None

        error_info = info["error"]
        if isinstance(error_info, dict):
            error_type = error_info.get("type", "unknown")
            error_reason = error_info.get("reason", "unknown error")
            caused_by = None
            if "caused_by" in error_info:
                caused_by_info = error_info["caused_by"]
                caused_by = f"{caused_by_info.get('type', '')}: {caused_by_info.get('reason', '')}"
        else:
            error_type = "unknown"
            error_reason = str(error_info)
            caused_by = None

        try:
            operation = BulkAction(op_type)
        except ValueError:
            operation = None

        return cls(
            index_name=info.get("_index", ""),
            doc_id=info.get("_id"),
            error_type=error_type,
            error_reason=error_reason,
            status=info.get("status", 0),
            caused_by=caused_by,
            operation=operation,
        )


@dataclass
class BulkRequestEvent:
    """单次批量请求的埋点事件.

    Attributes:
        index_name: 目标索引名称
        request: 提交的请求体
        response: 响应内容，请求失败时为 None
        error: 请求失败时的异常
        runtime: 请求耗时（秒）
        body_stats: 请求体中各操作类型的数量
        wait_interval: 请求后的限流等待时间（秒）
    """

    index_name: str | None
    request: Any
    response: Any = None
    error: BaseException | None = None
    runtime: float = 0.0
    body_stats: dict[BulkAction, int] = field(default_factory=dict)
    wait_interval: float = 0.0


@dataclass
class BulkResult:
    """批量操作结果数据类.

    Attributes:
        total: 总操作数
        indexed: 已提交的索引数
        created: 已提交的创建数
        updated: 已提交的更新数
        deleted: 已提交的删除数
        discarded: 因超过最大请求体限制而丢弃的操作
        request_count: 成功提交的请求数
        took: 总耗时（秒）
        warnings: 警告信息列表
    """

    total: int = 0
    indexed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    discarded: list[BulkOperation] = field(default_factory=list)
    request_count: int = 0
    took: float = 0.0
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> int:
        """已提交的操作总数."""
        return self.indexed + self.created + self.updated + self.deleted

    def is_success(self) -> bool:
        """判断操作是否全部提交（没有被丢弃的文档）."""
        return not self.discarded

    def add_stats(self, stats: dict[BulkAction, int]) -> None:
        """累加一个请求体的操作统计."""
        self.indexed += stats.get(BulkAction.INDEX, 0)
        self.created += stats.get(BulkAction.CREATE, 0)
        self.updated += stats.get(BulkAction.UPDATE, 0)
        self.deleted += stats.get(BulkAction.DELETE, 0)
        self.request_count += 1

    def add_warning(self, warning: str) -> None:
        """添加警告信息."""
        self.warnings.append(warning)

    def merge(self, other: "BulkResult") -> None:
        """合并另一个批次的结果."""
        self.total += other.total
        self.indexed += other.indexed
        self.created += other.created
        self.updated += other.updated
        self.deleted += other.deleted
        self.discarded.extend(other.discarded)
        self.request_count += other.request_count
        self.warnings.extend(other.warnings)
