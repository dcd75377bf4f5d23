"""批量请求体模块.

每个请求体对应一次批量接口调用，有两种物理编码：
- JsonRequestBody: 结构化的操作列表，由客户端负责序列化
- RawRequestBody: 预先序列化的 NDJSON 字节缓冲区，用于精确控制请求体大小
"""

from abc import ABC, abstractmethod
from typing import Any

from .exceptions import BulkProcessingError
from .models import BulkAction, BulkOperation


class RequestBody(ABC):
    """批量请求体基类.

    Attributes:
        stats: 各操作类型的数量，未出现的类型为 0
    """

    def __init__(self) -> None:
        self.stats: dict[BulkAction, int] = {action: 0 for action in BulkAction}

    @property
    @abstractmethod
    def body(self) -> Any:
        """请求体的物理内容."""

    @abstractmethod
    def payload(self) -> Any:
        """提交给批量接口的最终内容."""

    def has_body(self) -> bool:
        """请求体是否非空，空请求体不应被提交."""
        return len(self.body) > 0

    @property
    def operation_count(self) -> int:
        """请求体中的操作总数."""
        return sum(self.stats.values())

    def __repr__(self) -> str:
        stats = ", ".join(f"{k.value}={v}" for k, v in self.stats.items() if v)
        return f"<{type(self).__name__} {stats or 'empty'}>"


class JsonRequestBody(RequestBody):
    """结构化请求体.

    通过 index/create/update/delete 属性追加同类型的操作列表，
    不做数据校验，文档转换在上游完成。
    """

    def __init__(self) -> None:
        super().__init__()
        self._operations: list[BulkOperation] = []

    @property
    def body(self) -> list[BulkOperation]:
        return self._operations

    def payload(self) -> list[dict[str, Any]]:
        lines: list[dict[str, Any]] = []
        for operation in self._operations:
            lines.extend(operation.to_bulk_lines())
        return lines

    def _append(self, action: BulkAction, operations: list[BulkOperation]) -> None:
        operations = list(operations)
        self._operations.extend(operations)
        self.stats[action] += len(operations)

    def _of(self, action: BulkAction) -> list[BulkOperation]:
        return [op for op in self._operations if op.action == action]

    @property
    def index(self) -> list[BulkOperation]:
        return self._of(BulkAction.INDEX)

    @index.setter
    def index(self, operations: list[BulkOperation]) -> None:
        self._append(BulkAction.INDEX, operations)

    @property
    def create(self) -> list[BulkOperation]:
        return self._of(BulkAction.CREATE)

    @create.setter
    def create(self, operations: list[BulkOperation]) -> None:
        self._append(BulkAction.CREATE, operations)

    @property
    def update(self) -> list[BulkOperation]:
        return self._of(BulkAction.UPDATE)

    @update.setter
    def update(self, operations: list[BulkOperation]) -> None:
        self._append(BulkAction.UPDATE, operations)

    @property
    def delete(self) -> list[BulkOperation]:
        return self._of(BulkAction.DELETE)

    @delete.setter
    def delete(self, operations: list[BulkOperation]) -> None:
        self._append(BulkAction.DELETE, operations)


class RawRequestBody(RequestBody):
    """原始 NDJSON 请求体.

    逐个追加预先序列化的 "{action}\\n{payload}" 片段，片段之间以换行连接。
    追加完成后必须调用一次 finalize() 添加结尾换行，之后不能再追加。
    """

    def __init__(self) -> None:
        super().__init__()
        self._buffer = bytearray()
        self._finalized = False

    @property
    def body(self) -> bytearray:
        return self._buffer

    @property
    def finalized(self) -> bool:
        return self._finalized

    def payload(self) -> bytes:
        return bytes(self._buffer)

    def bytesize(self) -> int:
        """当前缓冲区字节数，用于与服务端最大请求体限制比较."""
        return len(self._buffer)

    def add(self, action: BulkAction, piece: bytes | str) -> None:
        """追加一个序列化片段.

        Args:
            action: 片段对应的操作类型
            piece: 已序列化的 "{action}\\n{payload}" 片段

        Raises:
            BulkProcessingError: 请求体已经 finalize 时抛出
        """
        if self._finalized:
            raise BulkProcessingError("请求体已完成，不能继续追加操作")
        if isinstance(piece, str):
            piece = piece.encode("utf-8")
        if self._buffer:
            self._buffer += b"\n"
        self._buffer += piece
        self.stats[action] += 1

    def finalize(self) -> None:
        """添加结尾换行，NDJSON 格式要求请求体以换行结束."""
        if self._finalized:
            raise BulkProcessingError("请求体已经完成，不能重复调用 finalize")
        self._buffer += b"\n"
        self._finalized = True
