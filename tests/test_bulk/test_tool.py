"""批量操作工具单元测试."""

import unittest
from unittest.mock import MagicMock, patch

from elasticsearch import ApiError, ConnectionTimeout, Elasticsearch

from elasticbulk.bulk import (
    BulkAction,
    BulkConfig,
    BulkOperation,
    BulkOperationTool,
    BulkRequestEvent,
    BulkResult,
    JsonRequestBody,
)
from elasticbulk.bulk.exceptions import (
    BulkEntityTooLargeError,
    BulkRequestTimeoutError,
    BulkResponseError,
    BulkRetryExhaustedError,
    BulkValidationError,
)
from elasticbulk.bulk.tool import coerce_exception

OK_RESPONSE = {"took": 3, "errors": False, "items": []}


def _api_error(status: int, reason: str = "") -> ApiError:
    body = {
        "error": {
            "root_cause": [{"type": "illegal_argument_exception", "reason": reason}],
            "type": "illegal_argument_exception",
            "reason": reason,
        },
        "status": status,
    }
    return ApiError(message=reason, meta=MagicMock(status=status), body=body)


class TestCoerceException(unittest.TestCase):
    """客户端异常转换测试."""

    def test_connection_timeout(self):
        """测试连接超时转换为超时异常."""
        error = coerce_exception(ConnectionTimeout("timed out"))
        self.assertIsInstance(error, BulkRequestTimeoutError)

    def test_gateway_timeout(self):
        """测试 504 转换为超时异常."""
        self.assertIsInstance(coerce_exception(_api_error(504)), BulkRequestTimeoutError)
        self.assertIsInstance(coerce_exception(_api_error(408)), BulkRequestTimeoutError)

    def test_entity_too_large(self):
        """测试 413 转换为请求体过大异常并保留大小限制."""
        error = coerce_exception(
            _api_error(413, "Request entity too large: exceeded 1024 bytes")
        )
        self.assertIsInstance(error, BulkEntityTooLargeError)
        self.assertEqual(error.parse_max_bytes(), 1024)

    def test_other_errors_unchanged(self):
        """测试其他异常原样返回."""
        original = _api_error(400, "bad request")
        self.assertIs(coerce_exception(original), original)
        value_error = ValueError("boom")
        self.assertIs(coerce_exception(value_error), value_error)


class TestBulkOperationTool(unittest.TestCase):
    """BulkOperationTool 类单元测试."""

    def setUp(self):
        """设置测试环境."""
        self.es_client = MagicMock(spec=Elasticsearch)
        self.es_client.bulk.return_value = OK_RESPONSE
        self.bulk_tool = BulkOperationTool(self.es_client, batch_size=100, max_retries=3)
        sleep_patcher = patch("elasticbulk.bulk.coordinator.time.sleep")
        self.mock_sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

    def test_initialization(self):
        """测试初始化."""
        tool = BulkOperationTool(self.es_client)
        self.assertEqual(tool.config, BulkConfig())
        self.assertEqual(tool.config.max_retries, 4)
        self.assertEqual(tool.config.batch_size, 500)

    def test_custom_initialization(self):
        """测试自定义初始化."""
        self.assertEqual(self.bulk_tool.config.batch_size, 100)
        self.assertEqual(self.bulk_tool.config.max_retries, 3)

    def test_none_client_raises(self):
        """测试客户端为空时抛出异常."""
        with self.assertRaises(ValueError):
            BulkOperationTool(None)

    def test_unknown_config_raises(self):
        """测试未知配置项抛出异常."""
        with self.assertRaises(BulkValidationError):
            BulkOperationTool(self.es_client, retry_delay=1.0)

    def test_set_config(self):
        """测试更新配置."""
        self.bulk_tool.set_config(batch_size=1000, max_retries=5, wait_interval=2.0)
        self.assertEqual(self.bulk_tool.config.batch_size, 1000)
        self.assertEqual(self.bulk_tool.config.max_retries, 5)
        self.assertEqual(self.bulk_tool.config.wait_interval, 2.0)

    def test_set_config_invalid(self):
        """测试非法配置不生效."""
        with self.assertRaises(BulkValidationError):
            self.bulk_tool.set_config(max_retries=0)
        self.assertEqual(self.bulk_tool.config.max_retries, 3)

    def test_bulk_sends_structured_operations(self):
        """测试一次调用中提交多种操作."""
        result = self.bulk_tool.bulk(
            "users",
            index=[BulkOperation(BulkAction.INDEX, "1", {"name": "Alice"})],
            delete=[BulkOperation(BulkAction.DELETE, "2")],
            refresh="wait_for",
        )

        self.es_client.bulk.assert_called_once_with(
            operations=[
                {"delete": {"_id": "2"}},
                {"index": {"_id": "1"}},
                {"name": "Alice"},
            ],
            index="users",
            refresh="wait_for",
        )
        self.assertIsInstance(result, BulkResult)
        self.assertEqual(result.total, 2)
        self.assertEqual(result.indexed, 1)
        self.assertEqual(result.deleted, 1)
        self.assertEqual(result.request_count, 1)
        self.assertTrue(result.is_success())

    def test_bulk_empty_does_not_call_client(self):
        """测试没有数据时不调用客户端."""
        result = self.bulk_tool.bulk("users")
        self.es_client.bulk.assert_not_called()
        self.assertEqual(result.request_count, 0)

    def test_bulk_unwraps_response_body(self):
        """测试解包 ObjectApiResponse 的 body."""
        response = MagicMock()
        response.body = {"errors": True, "items": []}
        self.es_client.bulk.return_value = response

        with self.assertRaises(BulkResponseError) as ctx:
            self.bulk_tool.bulk(
                "users", index=[BulkOperation(BulkAction.INDEX, "1", {"a": 1})]
            )
        self.assertIs(ctx.exception.response, response.body)

    def test_bulk_retries_on_connection_timeout(self):
        """测试连接超时后重试."""
        self.es_client.bulk.side_effect = [ConnectionTimeout("timed out"), OK_RESPONSE]
        result = self.bulk_tool.bulk(
            "users", index=[BulkOperation(BulkAction.INDEX, "1", {"a": 1})]
        )
        self.assertEqual(self.es_client.bulk.call_count, 2)
        self.assertEqual(result.indexed, 1)
        self.mock_sleep.assert_called_once()

    def test_bulk_counts_each_document_once_after_retry(self):
        """测试拆分为单文档请求后再次超时，重新提交的请求体不重复计数."""
        self.bulk_tool.set_config(max_retries=4)
        self.es_client.bulk.side_effect = [
            ConnectionTimeout("timed out"),
            ConnectionTimeout("timed out"),
            OK_RESPONSE,
            ConnectionTimeout("timed out"),
            OK_RESPONSE,
            OK_RESPONSE,
            OK_RESPONSE,
        ]
        result = self.bulk_tool.bulk(
            "users",
            index=[BulkOperation(BulkAction.INDEX, str(i), {"n": i}) for i in range(3)],
        )

        self.assertEqual(self.es_client.bulk.call_count, 7)
        self.assertEqual(result.total, 3)
        self.assertEqual(result.indexed, 3)
        self.assertEqual(result.success, 3)
        self.assertEqual(result.request_count, 3)
        self.assertLessEqual(result.success, result.total)

    def test_bulk_counts_final_plan_after_split(self):
        """测试 413 拆分前后的请求体只统计最终计划."""
        self.es_client.bulk.side_effect = [
            _api_error(413, "Request entity too large: exceeded 60 bytes"),
            OK_RESPONSE,
            ConnectionTimeout("timed out"),
            OK_RESPONSE,
            OK_RESPONSE,
        ]
        result = self.bulk_tool.bulk(
            "users",
            index=[
                BulkOperation(BulkAction.INDEX, "1", {"name": "Alice"}),
                BulkOperation(BulkAction.INDEX, "2", {"name": "Bob"}),
            ],
        )

        self.assertEqual(self.es_client.bulk.call_count, 5)
        self.assertEqual(result.indexed, 2)
        self.assertEqual(result.request_count, 2)

    def test_bulk_retry_exhausted(self):
        """测试超时重试耗尽."""
        self.es_client.bulk.side_effect = ConnectionTimeout("timed out")
        with self.assertRaises(BulkRetryExhaustedError):
            self.bulk_tool.bulk(
                "users", index=[BulkOperation(BulkAction.INDEX, "1", {"a": 1})]
            )
        self.assertEqual(self.es_client.bulk.call_count, 3)

    def test_bulk_splits_on_entity_too_large(self):
        """测试 413 后以原始请求体重新提交."""
        self.es_client.bulk.side_effect = [
            _api_error(413, "Request entity too large: exceeded 60 bytes"),
            OK_RESPONSE,
            OK_RESPONSE,
        ]
        result = self.bulk_tool.bulk(
            "users",
            index=[
                BulkOperation(BulkAction.INDEX, "1", {"name": "Alice"}),
                BulkOperation(BulkAction.INDEX, "2", {"name": "Bob"}),
            ],
        )

        self.assertEqual(self.es_client.bulk.call_count, 3)
        second = self.es_client.bulk.call_args_list[1].kwargs["operations"]
        third = self.es_client.bulk.call_args_list[2].kwargs["operations"]
        self.assertEqual(second, b'{"index":{"_id":"1"}}\n{"name":"Alice"}\n')
        self.assertEqual(third, b'{"index":{"_id":"2"}}\n{"name":"Bob"}\n')
        self.assertEqual(result.indexed, 2)
        self.assertEqual(result.request_count, 2)

    def test_bulk_reports_discarded_documents(self):
        """测试超限文档记录在结果中."""
        self.es_client.bulk.side_effect = [
            _api_error(413, "Request entity too large: exceeded 60 bytes"),
            OK_RESPONSE,
        ]
        result = self.bulk_tool.bulk(
            "users",
            index=[
                BulkOperation(BulkAction.INDEX, "1", {"name": "Alice"}),
                BulkOperation(BulkAction.INDEX, "2", {"name": "x" * 100}),
            ],
        )
        self.assertEqual([op.doc_id for op in result.discarded], ["2"])
        self.assertEqual(len(result.warnings), 1)
        self.assertFalse(result.is_success())

    def test_other_api_errors_propagate(self):
        """测试其他客户端异常原样抛出."""
        error = _api_error(400, "bad request")
        self.es_client.bulk.side_effect = error
        with self.assertRaises(ApiError) as ctx:
            self.bulk_tool.bulk(
                "users", index=[BulkOperation(BulkAction.INDEX, "1", {"a": 1})]
            )
        self.assertIs(ctx.exception, error)

    def test_events_published(self):
        """测试每次提交发布埋点事件."""
        events: list[BulkRequestEvent] = []
        self.bulk_tool.subscribe(events.append)
        self.es_client.bulk.side_effect = [ConnectionTimeout("timed out"), OK_RESPONSE]

        self.bulk_tool.bulk(
            "users", index=[BulkOperation(BulkAction.INDEX, "1", {"a": 1})]
        )

        self.assertEqual(len(events), 2)
        self.assertIsInstance(events[0].error, BulkRequestTimeoutError)
        self.assertIsNone(events[0].response)
        self.assertEqual(events[1].response, OK_RESPONSE)
        self.assertIsInstance(events[1].request, JsonRequestBody)
        self.assertEqual(events[1].body_stats[BulkAction.INDEX], 1)
        self.assertEqual(events[1].index_name, "users")
        self.assertGreaterEqual(events[1].runtime, 0)

    def test_failing_listener_does_not_break_bulk(self):
        """测试事件处理失败不影响写入."""
        self.bulk_tool.subscribe(MagicMock(side_effect=RuntimeError("listener")))
        with patch("elasticbulk.bulk.tool.logger") as mock_logger:
            result = self.bulk_tool.bulk(
                "users", index=[BulkOperation(BulkAction.INDEX, "1", {"a": 1})]
            )
        self.assertEqual(result.indexed, 1)
        # 记录异常堆栈
        mock_logger.exception.assert_called_once()
        self.assertIn("listener", mock_logger.exception.call_args.args[0])
        mock_logger.error.assert_not_called()

    def test_unsubscribe(self):
        """测试取消订阅."""
        listener = MagicMock()
        self.bulk_tool.subscribe(listener)
        self.bulk_tool.unsubscribe(listener)
        self.bulk_tool.bulk("users", index=[BulkOperation(BulkAction.INDEX, "1", {"a": 1})])
        listener.assert_not_called()

    @patch("elasticbulk.bulk.tool.time.sleep")
    def test_wait_interval_throttles(self, mock_sleep):
        """测试每次请求后按 wait_interval 等待."""
        events: list[BulkRequestEvent] = []
        self.bulk_tool.set_config(wait_interval=0.5)
        self.bulk_tool.subscribe(events.append)
        self.bulk_tool.bulk("users", index=[BulkOperation(BulkAction.INDEX, "1", {"a": 1})])
        mock_sleep.assert_called_once_with(0.5)
        self.assertEqual(events[0].wait_interval, 0.5)

    def test_bulk_execute_groups_by_action(self):
        """测试混合操作按类型分组."""
        operations = [
            BulkOperation(BulkAction.INDEX, "1", {"name": "Alice"}, index_name="users"),
            BulkOperation(BulkAction.DELETE, "2", index_name="users"),
            BulkOperation(BulkAction.INDEX, "3", {"name": "Carol"}, index_name="users"),
        ]
        result = self.bulk_tool.bulk_execute(operations)

        sent = self.es_client.bulk.call_args.kwargs["operations"]
        self.assertEqual(sent[0], {"delete": {"_id": "2", "_index": "users"}})
        self.assertNotIn("index", self.es_client.bulk.call_args.kwargs)
        self.assertEqual(result.indexed, 2)
        self.assertEqual(result.deleted, 1)

    def test_bulk_index(self):
        """测试批量索引."""
        documents = [{"id": "1", "name": "Alice"}, {"id": "2", "name": "Bob"}]
        result = self.bulk_tool.bulk_index(
            "users", documents, doc_id_field="id", routing_field="name"
        )

        sent = self.es_client.bulk.call_args.kwargs["operations"]
        self.assertEqual(sent[0], {"index": {"_id": "1", "routing": "Alice"}})
        self.assertEqual(result.indexed, 2)

    def test_bulk_index_in_batches(self):
        """测试按 batch_size 分批."""
        documents = [{"id": str(i)} for i in range(250)]
        result = self.bulk_tool.bulk_index("users", documents, doc_id_field="id")
        self.assertEqual(self.es_client.bulk.call_count, 3)
        self.assertEqual(result.total, 250)
        self.assertEqual(result.indexed, 250)

    def test_bulk_create(self):
        """测试批量创建."""
        result = self.bulk_tool.bulk_create("users", [{"name": "Alice"}])
        sent = self.es_client.bulk.call_args.kwargs["operations"]
        self.assertEqual(sent, [{"create": {}}, {"name": "Alice"}])
        self.assertEqual(result.created, 1)

    def test_bulk_update(self):
        """测试批量更新."""
        updates = [{"id": "1", "name": "Alice Smith"}]
        result = self.bulk_tool.bulk_update("users", updates)

        sent = self.es_client.bulk.call_args.kwargs["operations"]
        self.assertEqual(
            sent,
            [
                {"update": {"_id": "1", "retry_on_conflict": 3}},
                {"doc": {"name": "Alice Smith"}},
            ],
        )
        self.assertEqual(result.updated, 1)

    def test_bulk_update_missing_id(self):
        """测试批量更新缺少ID字段."""
        with self.assertRaises(BulkValidationError):
            self.bulk_tool.bulk_update("users", [{"name": "Alice"}])

    def test_bulk_upsert(self):
        """测试批量UPSERT."""
        documents = [{"name": "Alice"}, {"id": "2", "name": "Bob"}]
        result = self.bulk_tool.bulk_upsert("users", documents)

        sent = self.es_client.bulk.call_args.kwargs["operations"]
        self.assertEqual(
            sent,
            [
                {"update": {"_id": "2", "retry_on_conflict": 3}},
                {"doc": {"name": "Bob"}, "doc_as_upsert": True},
            ],
        )
        self.assertEqual(result.total, 2)
        self.assertEqual(result.updated, 1)
        self.assertEqual(len(result.warnings), 1)

    def test_bulk_delete(self):
        """测试批量删除."""
        result = self.bulk_tool.bulk_delete("users", ["1", "2", "3"])
        sent = self.es_client.bulk.call_args.kwargs["operations"]
        self.assertEqual(sent[0], {"delete": {"_id": "1"}})
        self.assertEqual(result.deleted, 3)

    def test_bulk_stream(self):
        """测试流式批量处理."""
        operations = (
            BulkOperation(BulkAction.INDEX, str(i), {"id": i}) for i in range(250)
        )
        progress = MagicMock()

        result = self.bulk_tool.bulk_stream(operations, "logs", progress_callback=progress)

        self.assertEqual(self.es_client.bulk.call_count, 3)
        self.assertEqual(result.total, 250)
        self.assertEqual(result.indexed, 250)
        self.assertEqual(progress.call_count, 3)
        self.assertEqual(progress.call_args_list[-1].args[0], 250)


if __name__ == "__main__":
    unittest.main()
