"""批量请求协调器.

负责把全部待写入操作打包成一个或多个请求体，并在以下两类错误时自动恢复：
- 请求超时：指数退避重试，可选在最后几次尝试中拆分为单文档请求
- 请求体过大（413）：按服务端限制的字节数重新打包，仅重试一次

状态流转（每次 each_request 调用）::

    INIT -> SUBMITTING -> SUCCESS
                       -> TIMEOUT_RETRY -> (SMALL_CHUNK_REBUILD) -> SUBMITTING
                       -> SIZE_RETRY -> SIZE_REBUILD -> SUBMITTING
                       -> FATAL
"""

import logging
import random
import threading
import time
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from elasticsearch import ConnectionTimeout

from ..typing import Submitter
from .exceptions import (
    BulkCancelledError,
    BulkDocumentTooLargeError,
    BulkEntityTooLargeError,
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
    OversizedDocumentPolicy,
)
from .request_body import JsonRequestBody, RawRequestBody, RequestBody

# 视为可重试超时的异常类型
TIMEOUT_ERRORS: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionTimeout,
    BulkRequestTimeoutError,
)

# 请求体内的操作类型顺序，重新打包时保持一致
ACTION_ORDER = (
    BulkAction.DELETE,
    BulkAction.CREATE,
    BulkAction.INDEX,
    BulkAction.UPDATE,
)


class BulkCoordinator:
    """批量请求协调器.

    持有按类型划分的全部待写入操作，生成请求计划并逐个提交给调用方提供的
    执行器。单个实例不支持并发或重入调用；需要并发写入时请为每组文档
    创建独立的实例。

    Args:
        index: 待索引的操作列表
        create: 待创建的操作列表
        update: 待更新的操作列表
        delete: 待删除的操作列表
        config: 批量操作配置，默认使用 BulkConfig 的默认值
        logger: 记录重试与丢弃警告的日志对象，默认使用模块日志
        cancel_event: 取消信号，设置后退避等待会立即中断

    Attributes:
        retry_count: 当前调用的超时重试次数
        requests: 当前请求计划，恢复策略触发时整体替换
        discarded: 因超过最大请求体限制而丢弃的操作

    Examples:
        >>> coordinator = BulkCoordinator(index=[op1, op2], delete=[op3])
        >>> for request in coordinator.each_request(submit):
        ...     print(request.stats)
    """

    def __init__(
        self,
        index: Iterable[BulkOperation] = (),
        create: Iterable[BulkOperation] = (),
        update: Iterable[BulkOperation] = (),
        delete: Iterable[BulkOperation] = (),
        *,
        config: BulkConfig | None = None,
        logger: logging.Logger | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self._operations: dict[BulkAction, tuple[BulkOperation, ...]] = {
            BulkAction.INDEX: self._validate(BulkAction.INDEX, index),
            BulkAction.CREATE: self._validate(BulkAction.CREATE, create),
            BulkAction.UPDATE: self._validate(BulkAction.UPDATE, update),
            BulkAction.DELETE: self._validate(BulkAction.DELETE, delete),
        }
        self.config = config or BulkConfig()
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.cancel_event = cancel_event
        self.retry_count = 0
        self.requests: list[RequestBody] = []
        self.discarded: list[BulkOperation] = []

    @staticmethod
    def _validate(
        action: BulkAction, operations: Iterable[BulkOperation]
    ) -> tuple[BulkOperation, ...]:
        operations = tuple(operations)
        for operation in operations:
            if operation.action != action:
                raise BulkValidationError(
                    f"操作 {operation.doc_id!r} 的类型为 {operation.action.value}，"
                    f"不能放入 {action.value} 列表"
                )
        return operations

    @property
    def operations(self) -> list[BulkOperation]:
        """按打包顺序排列的全部操作."""
        return [op for action in ACTION_ORDER for op in self._operations[action]]

    @property
    def total(self) -> int:
        return sum(len(ops) for ops in self._operations.values())

    def each_request(
        self,
        submit: Submitter,
        max_retries: int | None = None,
        last_retry_in_small_chunks: bool | None = None,
    ) -> Iterator[RequestBody]:
        """逐个提交请求体，返回成功提交的请求体.

        超时后按以下公式指数退避重试，最多尝试 max_retries 次::

            wait_interval = retry_count**4 + 15 + randrange(10) * (retry_count + 1)

        请求体过大时按服务端限制重新打包，仅重试一次。每次重试都从（可能已
        替换的）请求计划的开头重新开始提交，因此重试前已成功的请求体会被再次
        提交并再次返回。统计写入数量时应以 requests 中的当前计划为准，按对象
        去重，并在计划被替换时清空已统计的请求体。

        Args:
            submit: 执行器，参数为请求体，返回批量接口响应
            max_retries: 超时最大尝试次数，默认取配置值
            last_retry_in_small_chunks: 最后几次重试是否拆分为单文档请求，默认取配置值

        Yields:
            执行器成功处理的请求体

        Raises:
            BulkRetryExhaustedError: 超时重试次数耗尽
            BulkEntityTooLargeError: 第二次出现请求体过大，或无法解析大小限制
            BulkResponseError: 响应的 errors 字段为 true
            BulkDocumentTooLargeError: 单文档超限且策略为 RAISE
            BulkCancelledError: 退避等待期间收到取消信号
        """
        if max_retries is None:
            max_retries = self.config.max_retries
        if last_retry_in_small_chunks is None:
            last_retry_in_small_chunks = self.config.last_retry_in_small_chunks

        self.requests = [self._optimistic_request()]
        self.retry_count = 0
        self.discarded = []
        size_retry_count = 0
        position = 0

        while position < len(self.requests):
            request = self.requests[position]
            position += 1
            if not request.has_body():
                continue

            try:
                response = submit(request)
            except TIMEOUT_ERRORS as e:
                self.retry_count += 1
                if self.retry_count >= max_retries:
                    raise BulkRetryExhaustedError(
                        f"批量请求超时，已尝试 {self.retry_count} 次: {e}"
                    ) from e
                # 超时可能由请求体过大导致，最后的尝试拆分为单文档请求
                if (
                    last_retry_in_small_chunks
                    and max_retries > 2
                    and self.retry_count == max_retries - 2
                ):
                    self.requests = self._requests_in_small_chunks()
                wait_interval = self.wait_interval(self.retry_count)
                self.logger.warning(f"批量请求超时，{wait_interval} 秒后重试")
                self._sleep(wait_interval)
                position = 0
                continue
            except BulkEntityTooLargeError as e:
                size_retry_count += 1
                if size_retry_count > 1:
                    raise
                self.requests = self._balance_requests_size(e)
                sizes = " + ".join(str(r.bytesize()) for r in self.requests)
                self.logger.warning(
                    f"请求体过大，拆分为多个请求重试: {sizes or 0} 字节。"
                    "这会降低写入性能，请考虑调小批次大小或调大 http.max_content_length"
                )
                position = 0
                continue

            self._raise_on_errors(response)
            yield request

    def run(
        self,
        submit: Submitter,
        max_retries: int | None = None,
        last_retry_in_small_chunks: bool | None = None,
    ) -> list[RequestBody]:
        """提交全部请求体并返回成功提交的请求体列表."""
        return list(self.each_request(submit, max_retries, last_retry_in_small_chunks))

    @staticmethod
    def wait_interval(retry_count: int) -> int:
        """计算第 retry_count 次重试前的等待秒数（带随机抖动）."""
        return retry_count**4 + 15 + random.randrange(10) * (retry_count + 1)

    def _sleep(self, interval: int) -> None:
        if self.cancel_event is None:
            time.sleep(interval)
            return
        if self.cancel_event.wait(interval):
            raise BulkCancelledError(f"重试等待期间收到取消信号，已重试 {self.retry_count} 次")

    def _optimistic_request(self) -> JsonRequestBody:
        request = JsonRequestBody()
        request.delete = self._operations[BulkAction.DELETE]
        request.create = self._operations[BulkAction.CREATE]
        request.index = self._operations[BulkAction.INDEX]
        request.update = self._operations[BulkAction.UPDATE]
        return request

    def _requests_in_small_chunks(self) -> list[RequestBody]:
        # 已因超限丢弃的文档不再提交
        discarded = {id(op) for op in self.discarded}
        requests: list[RequestBody] = []
        for operation in self.operations:
            if id(operation) in discarded:
                continue
            request = JsonRequestBody()
            setattr(request, operation.action.value, [operation])
            requests.append(request)
        return requests

    def _balance_requests_size(self, err: BulkEntityTooLargeError) -> list[RequestBody]:
        bulk_size = err.parse_max_bytes()
        if bulk_size <= 0:
            raise err

        requests = [RawRequestBody()]
        for operation in self.operations:
            piece = operation.serialize()
            # 每个片段在最终请求体中都跟随一个换行（分隔符或结尾换行）
            if len(piece) + 1 > bulk_size:
                self._discard(operation, len(piece), bulk_size, err)
                continue

            current = requests[-1]
            projected = len(piece) + 1
            if current.has_body():
                projected += current.bytesize() + 1
            if projected > bulk_size:
                current = RawRequestBody()
                requests.append(current)
            current.add(operation.action, piece)

        requests = [r for r in requests if r.has_body()]
        for request in requests:
            request.finalize()
        return requests

    def _discard(
        self,
        operation: BulkOperation,
        size: int,
        limit: int,
        err: BulkEntityTooLargeError,
    ) -> None:
        if self.config.oversized_policy == OversizedDocumentPolicy.RAISE:
            raise BulkDocumentTooLargeError(operation, size, limit) from err
        self.discarded.append(operation)
        self.logger.warning(
            f"文档 {operation.to_action()} 大小为 {size} 字节，超过最大请求体限制 {limit} 字节，"
            "本次导入将忽略该文档。请考虑调大请求体限制或减小文档大小"
        )

    @staticmethod
    def _raise_on_errors(response: Any) -> None:
        body = getattr(response, "body", response)
        if isinstance(body, Mapping):
            if not body.get("errors"):
                return
            items = body.get("items") or []
        else:
            if not getattr(body, "errors", False):
                return
            items = []
        errors = [
            error
            for error in (BulkErrorItem.from_response_item(item) for item in items)
            if error is not None
        ]
        raise BulkResponseError(body, errors)
