"""批量操作核心工具类."""

import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

from elasticsearch import ApiError, ConnectionTimeout, Elasticsearch

from .coordinator import BulkCoordinator
from .exceptions import (
    BulkEntityTooLargeError,
    BulkRequestTimeoutError,
    BulkValidationError,
)
from .models import (
    BulkAction,
    BulkConfig,
    BulkOperation,
    BulkRequestEvent,
    BulkResult,
)
from .request_body import RequestBody

logger = logging.getLogger(__name__)

# 视为超时的 HTTP 状态码
TIMEOUT_STATUSES = (408, 504)
ENTITY_TOO_LARGE_STATUS = 413

BulkListener = Callable[[BulkRequestEvent], None]


def _error_message(error: ApiError) -> str:
    """拼接 ApiError 的错误信息与响应体，供解析请求体大小限制使用."""
    message = str(error)
    body = getattr(error, "body", None)
    if body and str(body) not in message:
        message = f"{message} {body}"
    return message


def coerce_exception(error: Exception) -> Exception:
    """将客户端异常转换为批量协调器可识别的异常类型.

    Args:
        error: 客户端抛出的异常

    Returns:
        超时转换为 BulkRequestTimeoutError，413 转换为 BulkEntityTooLargeError，
        其他异常原样返回
    """
    if isinstance(error, ConnectionTimeout):
        return BulkRequestTimeoutError(str(error))
    if isinstance(error, ApiError):
        status = error.meta.status if error.meta is not None else None
        if status in TIMEOUT_STATUSES:
            return BulkRequestTimeoutError(_error_message(error))
        if status == ENTITY_TOO_LARGE_STATUS:
            return BulkEntityTooLargeError(_error_message(error))
    return error


class BulkOperationTool:
    """批量操作核心工具类.

    基于 BulkCoordinator 提供 Elasticsearch 批量写入功能，支持：
    - 超时指数退避重试
    - 请求体过大时按字节数自动拆分
    - 请求埋点事件订阅
    - 流式处理支持

    Args:
        es_client: Elasticsearch 客户端实例
        config: 批量操作配置，默认使用 BulkConfig 的默认值
        cancel_event: 取消信号，设置后正在进行的重试等待会立即中断
        **overrides: 覆盖 config 中的单个字段，例如 max_retries=5
    """

    def __init__(
        self,
        es_client: Elasticsearch,
        config: BulkConfig | None = None,
        cancel_event: threading.Event | None = None,
        **overrides: Any,
    ):
        if es_client is None:
            raise ValueError("es_client 不能为 None")
        self.es_client = es_client
        self.config = config or BulkConfig()
        if overrides:
            self.config = self._replace_config(**overrides)
        self.cancel_event = cancel_event
        self._listeners: list[BulkListener] = []
        logger.info(
            f"初始化批量操作工具: max_retries={self.config.max_retries}, "
            f"batch_size={self.config.batch_size}, "
            f"wait_interval={self.config.wait_interval}"
        )

    def _replace_config(self, **changes: Any) -> BulkConfig:
        fields = {f.name for f in dataclasses.fields(BulkConfig)}
        unknown = set(changes) - fields
        if unknown:
            raise BulkValidationError(f"未知的配置项: {', '.join(sorted(unknown))}")
        return dataclasses.replace(self.config, **changes)

    def set_config(self, **changes: Any) -> None:
        """更新工具配置.

        Args:
            **changes: 要修改的 BulkConfig 字段

        Raises:
            BulkValidationError: 配置项未知或取值不合法时抛出
        """
        self.config = self._replace_config(**changes)
        logger.info(f"更新配置: {self.config}")

    # ============================================================
    # 埋点事件
    # ============================================================

    def subscribe(self, listener: BulkListener) -> None:
        """订阅批量请求事件，每次提交请求后调用 listener(event)."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: BulkListener) -> None:
        """取消订阅批量请求事件."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _publish(self, event: BulkRequestEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.exception(f"批量请求事件处理失败: {str(e)}")

    # ============================================================
    # 请求执行
    # ============================================================

    def _make_submitter(
        self, index_name: str | None, params: dict[str, Any]
    ) -> Callable[[RequestBody], Any]:
        """创建提交单个请求体的执行器."""

        def submit(request: RequestBody) -> Any:
            event = BulkRequestEvent(
                index_name=index_name,
                request=request,
                body_stats=dict(request.stats),
            )
            start_time = time.time()
            try:
                kwargs = dict(params)
                if index_name is not None:
                    kwargs["index"] = index_name
                response = self.es_client.bulk(operations=request.payload(), **kwargs)
                event.response = getattr(response, "body", response)
            except Exception as e:
                event.error = coerce_exception(e)
                event.runtime = time.time() - start_time
                self._publish(event)
                if event.error is e:
                    raise
                raise event.error from e

            event.runtime = time.time() - start_time
            if self.config.wait_interval > 0:
                event.wait_interval = self.config.wait_interval
                time.sleep(self.config.wait_interval)
            self._publish(event)
            return event.response

        return submit

    def bulk(
        self,
        index_name: str | None = None,
        *,
        index: Iterable[BulkOperation] = (),
        create: Iterable[BulkOperation] = (),
        update: Iterable[BulkOperation] = (),
        delete: Iterable[BulkOperation] = (),
        **params: Any,
    ) -> BulkResult:
        """在一次批量调用中执行多种写入操作.

        Args:
            index_name: 目标索引名称，为空时需在每个操作中指定 index_name
            index: 待索引的操作列表
            create: 待创建的操作列表
            update: 待更新的操作列表
            delete: 待删除的操作列表
            **params: 传递给 es_client.bulk 的其他参数，例如 refresh、pipeline

        Returns:
            批量操作结果

        Raises:
            BulkRetryExhaustedError: 超时重试次数耗尽
            BulkEntityTooLargeError: 拆分后仍然请求体过大
            BulkResponseError: 响应中包含失败的文档

        Example:
            >>> bulk_tool = BulkOperationTool(es_client)
            >>> result = bulk_tool.bulk(
            ...     "users",
            ...     index=[BulkOperation(BulkAction.INDEX, "1", {"name": "Alice"})],
            ...     delete=[BulkOperation(BulkAction.DELETE, "2")],
            ... )
        """
        coordinator = BulkCoordinator(
            index=index,
            create=create,
            update=update,
            delete=delete,
            config=self.config,
            logger=logger,
            cancel_event=self.cancel_event,
        )
        result = BulkResult(total=coordinator.total)
        start_time = time.time()

        submit = self._make_submitter(index_name, params)
        # 恢复后会从计划开头重新提交，按对象去重，计划替换时重新统计
        plan: list[RequestBody] | None = None
        succeeded: dict[int, RequestBody] = {}
        for request in coordinator.each_request(submit):
            if coordinator.requests is not plan:
                plan = coordinator.requests
                succeeded = {}
            succeeded[id(request)] = request
        for request in succeeded.values():
            result.add_stats(request.stats)

        result.discarded.extend(coordinator.discarded)
        for operation in coordinator.discarded:
            result.add_warning(f"文档 {operation.doc_id!r} 超过最大请求体限制，已丢弃")
        result.took = time.time() - start_time

        logger.info(
            f"批量写入 {index_name or '-'}: 请求数 {result.request_count}, "
            f"提交 {result.success}/{result.total}, 丢弃 {len(result.discarded)}"
        )
        return result

    def bulk_execute(
        self,
        operations: Iterable[BulkOperation],
        index_name: str | None = None,
        **params: Any,
    ) -> BulkResult:
        """执行混合类型的批量操作.

        Args:
            operations: 批量操作项列表
            index_name: 目标索引名称
            **params: 传递给 es_client.bulk 的其他参数

        Returns:
            批量操作结果

        Example:
            >>> operations = [
            ...     BulkOperation(
            ...         action=BulkAction.INDEX,
            ...         doc_id="1",
            ...         source={"name": "Alice"},
            ...         index_name="users",
            ...     ),
            ...     BulkOperation(
            ...         action=BulkAction.DELETE,
            ...         doc_id="2",
            ...         index_name="users",
            ...     ),
            ... ]
            >>> result = bulk_tool.bulk_execute(operations)
        """
        grouped: dict[BulkAction, list[BulkOperation]] = {a: [] for a in BulkAction}
        for operation in operations:
            grouped[operation.action].append(operation)

        return self.bulk(
            index_name,
            index=grouped[BulkAction.INDEX],
            create=grouped[BulkAction.CREATE],
            update=grouped[BulkAction.UPDATE],
            delete=grouped[BulkAction.DELETE],
            **params,
        )

    def bulk_stream(
        self,
        operations: Iterable[BulkOperation],
        index_name: str | None = None,
        progress_callback: Callable[[int, int, BulkResult], None] | None = None,
        **params: Any,
    ) -> BulkResult:
        """流式执行批量操作.

        适用于处理超大量数据，按 batch_size 分批，每批使用独立的协调器提交。

        Args:
            operations: 批量操作项迭代器
            index_name: 目标索引名称
            progress_callback: 进度回调函数，参数为 (当前处理数, 已知总数或-1, 当前批次结果)
            **params: 传递给 es_client.bulk 的其他参数

        Returns:
            批量操作结果

        Example:
            >>> def progress_callback(current, total, result):
            ...     print(f"已处理: {current}, 提交: {result.success}")
            >>>
            >>> operations = (BulkOperation(...) for _ in range(1000000))
            >>> result = bulk_tool.bulk_stream(
            ...     operations, "users", progress_callback=progress_callback
            ... )
        """
        result = BulkResult()
        start_time = time.time()
        batch: list[BulkOperation] = []
        processed_count = 0

        def flush() -> None:
            nonlocal processed_count
            batch_result = self.bulk_execute(batch, index_name, **params)
            result.merge(batch_result)
            processed_count += batch_result.total
            if progress_callback:
                progress_callback(processed_count, -1, batch_result)
            batch.clear()

        for operation in operations:
            batch.append(operation)
            # 达到批次大小时执行
            if len(batch) >= self.config.batch_size:
                flush()

        # 处理剩余的操作
        if batch:
            flush()

        result.took = time.time() - start_time
        return result

    def _documents_to_operations(
        self,
        action: BulkAction,
        documents: list[dict[str, Any]],
        doc_id_field: str | None,
        routing_field: str | None = None,
        **extra: Any,
    ) -> list[BulkOperation]:
        operations: list[BulkOperation] = []
        for doc in documents:
            doc_id = doc.get(doc_id_field) if doc_id_field else None
            routing = doc.get(routing_field) if routing_field else None
            if action == BulkAction.UPDATE:
                if doc_id is None:
                    raise BulkValidationError(
                        f"更新数据中缺少文档ID字段 '{doc_id_field}': {doc}"
                    )
                # 排除ID字段，只保留需要更新的字段
                doc = {k: v for k, v in doc.items() if k != doc_id_field}
            operations.append(
                BulkOperation(
                    action=action,
                    doc_id=doc_id,
                    source=doc,
                    routing=routing,
                    **extra,
                )
            )
        return operations

    def _in_batches(
        self, action: BulkAction, index_name: str, operations: list[BulkOperation]
    ) -> BulkResult:
        result = BulkResult()
        start_time = time.time()
        size = self.config.batch_size
        for i in range(0, len(operations), size):
            batch = operations[i : i + size]
            result.merge(self.bulk(index_name, **{action.value: batch}))
        result.took = time.time() - start_time
        return result

    def bulk_index(
        self,
        index_name: str,
        documents: list[dict[str, Any]],
        doc_id_field: str | None = None,
        routing_field: str | None = None,
    ) -> BulkResult:
        """批量索引文档，文档已存在时覆盖.

        Args:
            index_name: 索引名称
            documents: 文档列表
            doc_id_field: 用作文档ID的字段名，如果不指定则让ES自动生成ID
            routing_field: 用作路由键的字段名

        Returns:
            批量操作结果

        Example:
            >>> documents = [{"id": "1", "name": "Alice"}, {"id": "2", "name": "Bob"}]
            >>> result = bulk_tool.bulk_index("users", documents, doc_id_field="id")
            >>> print(f"提交: {result.indexed}")
        """
        operations = self._documents_to_operations(
            BulkAction.INDEX, documents, doc_id_field, routing_field
        )
        return self._in_batches(BulkAction.INDEX, index_name, operations)

    def bulk_create(
        self,
        index_name: str,
        documents: list[dict[str, Any]],
        doc_id_field: str | None = None,
        routing_field: str | None = None,
    ) -> BulkResult:
        """批量创建文档，文档已存在时响应中会包含冲突错误.

        Args:
            index_name: 索引名称
            documents: 文档列表
            doc_id_field: 用作文档ID的字段名，如果不指定则让ES自动生成ID
            routing_field: 用作路由键的字段名

        Returns:
            批量操作结果
        """
        operations = self._documents_to_operations(
            BulkAction.CREATE, documents, doc_id_field, routing_field
        )
        return self._in_batches(BulkAction.CREATE, index_name, operations)

    def bulk_update(
        self,
        index_name: str,
        updates: list[dict[str, Any]],
        doc_id_field: str = "id",
        retry_on_conflict: int | None = None,
    ) -> BulkResult:
        """批量局部更新文档.

        Args:
            index_name: 索引名称
            updates: 更新数据列表，每个元素应包含文档ID和要更新的字段
            doc_id_field: 用作文档ID的字段名，默认为 "id"
            retry_on_conflict: 版本冲突时的重试次数，默认为 3

        Returns:
            批量操作结果

        Raises:
            BulkValidationError: 更新数据缺少文档ID时抛出
        """
        if retry_on_conflict is None:
            retry_on_conflict = 3
        operations = self._documents_to_operations(
            BulkAction.UPDATE,
            updates,
            doc_id_field,
            retry_on_conflict=retry_on_conflict,
        )
        return self._in_batches(BulkAction.UPDATE, index_name, operations)

    def bulk_upsert(
        self,
        index_name: str,
        documents: list[dict[str, Any]],
        doc_id_field: str = "id",
    ) -> BulkResult:
        """批量执行 UPSERT 操作（存在则更新，不存在则创建）.

        底层使用 UPDATE + doc_as_upsert。缺少ID字段的文档会被跳过并记录警告。

        Args:
            index_name: 索引名称
            documents: 文档列表
            doc_id_field: 用作文档ID的字段名，默认为 "id"

        Returns:
            批量操作结果
        """
        valid_documents: list[dict[str, Any]] = []
        warnings: list[str] = []
        for doc in documents:
            if doc.get(doc_id_field) is None:
                warning_msg = f"文档中缺少ID字段 '{doc_id_field}'，跳过: {doc}"
                logger.warning(warning_msg)
                warnings.append(warning_msg)
                continue
            valid_documents.append(doc)

        operations = self._documents_to_operations(
            BulkAction.UPDATE,
            valid_documents,
            doc_id_field,
            retry_on_conflict=3,
            doc_as_upsert=True,
        )
        result = self._in_batches(BulkAction.UPDATE, index_name, operations)
        result.total += len(warnings)
        result.warnings.extend(warnings)
        return result

    def bulk_delete(
        self,
        index_name: str,
        doc_ids: list[Any],
    ) -> BulkResult:
        """批量删除文档.

        Args:
            index_name: 索引名称
            doc_ids: 文档ID列表

        Returns:
            批量操作结果

        Example:
            >>> result = bulk_tool.bulk_delete("users", ["1", "2", "3"])
            >>> print(f"删除: {result.deleted}")
        """
        operations = [
            BulkOperation(action=BulkAction.DELETE, doc_id=doc_id) for doc_id in doc_ids
        ]
        return self._in_batches(BulkAction.DELETE, index_name, operations)
