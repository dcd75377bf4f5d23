"""批量请求体单元测试."""

import pytest

from elasticbulk.bulk import (
    BulkAction,
    BulkOperation,
    JsonRequestBody,
    RawRequestBody,
)
from elasticbulk.bulk.exceptions import BulkProcessingError


def _index(doc_id, **source) -> BulkOperation:
    return BulkOperation(BulkAction.INDEX, doc_id, source or {"name": "foo"})


def _delete(doc_id) -> BulkOperation:
    return BulkOperation(BulkAction.DELETE, doc_id)


# ==================== 结构化请求体 ====================


class TestJsonRequestBody:
    """JsonRequestBody 测试."""

    def test_empty_body(self) -> None:
        """测试空请求体."""
        request = JsonRequestBody()
        assert request.has_body() is False
        assert request.body == []
        assert request.payload() == []
        assert request.stats == {
            BulkAction.INDEX: 0,
            BulkAction.CREATE: 0,
            BulkAction.UPDATE: 0,
            BulkAction.DELETE: 0,
        }

    def test_setters_append_and_count(self) -> None:
        """测试按类型追加操作并统计数量."""
        request = JsonRequestBody()
        request.delete = [_delete(3)]
        request.index = [_index(1), _index(2)]

        assert request.has_body() is True
        assert [op.doc_id for op in request.body] == [3, 1, 2]
        assert request.stats[BulkAction.INDEX] == 2
        assert request.stats[BulkAction.DELETE] == 1
        assert request.stats[BulkAction.CREATE] == 0
        assert request.operation_count == 3

    def test_setter_appends_instead_of_replacing(self) -> None:
        """测试多次赋值为追加而非覆盖."""
        request = JsonRequestBody()
        request.index = [_index(1)]
        request.index = [_index(2)]
        assert [op.doc_id for op in request.index] == [1, 2]
        assert request.stats[BulkAction.INDEX] == 2

    def test_empty_list_keeps_body_empty(self) -> None:
        """测试追加空列表后请求体仍为空."""
        request = JsonRequestBody()
        request.index = []
        request.delete = []
        assert request.has_body() is False

    def test_payload_flattens_lines(self) -> None:
        """测试生成客户端使用的结构化行."""
        request = JsonRequestBody()
        request.delete = [_delete(3)]
        request.update = [BulkOperation(BulkAction.UPDATE, 4, {"name": "bar"})]
        request.index = [_index(1, name="foo")]

        assert request.payload() == [
            {"delete": {"_id": 3}},
            {"update": {"_id": 4}},
            {"doc": {"name": "bar"}},
            {"index": {"_id": 1}},
            {"name": "foo"},
        ]


# ==================== 原始请求体 ====================


class TestRawRequestBody:
    """RawRequestBody 测试."""

    def test_empty_body(self) -> None:
        """测试空请求体."""
        request = RawRequestBody()
        assert request.has_body() is False
        assert request.bytesize() == 0

    def test_add_joins_with_newline(self) -> None:
        """测试片段之间以换行连接."""
        request = RawRequestBody()
        request.add(BulkAction.INDEX, b'{"index":{"_id":1}}\n{"name":"foo"}')
        request.add(BulkAction.DELETE, '{"delete":{"_id":2}}')

        assert request.payload() == (
            b'{"index":{"_id":1}}\n{"name":"foo"}\n{"delete":{"_id":2}}'
        )
        assert request.stats[BulkAction.INDEX] == 1
        assert request.stats[BulkAction.DELETE] == 1
        assert request.bytesize() == len(request.payload())

    def test_finalize_appends_trailing_newline(self) -> None:
        """测试 finalize 添加结尾换行."""
        request = RawRequestBody()
        request.add(BulkAction.DELETE, b'{"delete":{"_id":2}}')
        request.finalize()

        assert request.payload() == b'{"delete":{"_id":2}}\n'
        assert request.finalized is True

    def test_finalize_twice_raises(self) -> None:
        """测试重复 finalize 抛出异常."""
        request = RawRequestBody()
        request.add(BulkAction.DELETE, b'{"delete":{"_id":2}}')
        request.finalize()
        with pytest.raises(BulkProcessingError):
            request.finalize()

    def test_add_after_finalize_raises(self) -> None:
        """测试 finalize 后追加抛出异常."""
        request = RawRequestBody()
        request.add(BulkAction.DELETE, b'{"delete":{"_id":2}}')
        request.finalize()
        with pytest.raises(BulkProcessingError, match="不能继续追加"):
            request.add(BulkAction.DELETE, b'{"delete":{"_id":3}}')

    def test_bytesize_counts_utf8_bytes(self) -> None:
        """测试字节数按 UTF-8 编码计算."""
        request = RawRequestBody()
        request.add(BulkAction.INDEX, '{"index":{"_id":1}}\n{"name":"张三"}')
        assert request.bytesize() == len('{"index":{"_id":1}}\n{"name":"张三"}'.encode())
        assert request.bytesize() > len('{"index":{"_id":1}}\n{"name":"张三"}')
