"""批量写入工具使用示例.

本文件展示了如何使用 BulkOperationTool 与 BulkCoordinator 可靠地向
Elasticsearch 批量写入文档。
"""

import logging
import threading

from elasticsearch import Elasticsearch
from elasticbulk.bulk import (
    BulkAction,
    BulkConfig,
    BulkCoordinator,
    BulkOperation,
    BulkOperationTool,
    BulkRequestEvent,
    OversizedDocumentPolicy,
)
from elasticbulk.bulk.exceptions import BulkResponseError, BulkRetryExhaustedError

logging.basicConfig(level=logging.INFO)

# 创建 Elasticsearch 客户端连接
es_client = Elasticsearch(["http://localhost:9200"])

# 创建批量写入工具实例
bulk_tool = BulkOperationTool(
    es_client=es_client,
    config=BulkConfig(
        max_retries=4,  # 超时最多尝试4次
        last_retry_in_small_chunks=True,  # 最后的尝试拆分为单文档请求
        wait_interval=0.0,  # 每次请求后不额外等待
        batch_size=1000,  # 便捷方法每批处理1000条记录
    ),
)


# ==================== 示例1：批量索引 ====================
def example_bulk_index():
    """批量索引文档到 Elasticsearch."""
    documents = [
        {"id": "1", "name": "张三", "age": 25, "city": "北京"},
        {"id": "2", "name": "李四", "age": 30, "city": "上海"},
        {"id": "3", "name": "王五", "age": 28, "city": "广州"},
    ]

    result = bulk_tool.bulk_index(
        index_name="users",
        documents=documents,
        doc_id_field="id",  # 使用 id 字段作为文档ID
    )

    print("批量索引结果:")
    print(f"  总数: {result.total}")
    print(f"  提交: {result.indexed}")
    print(f"  请求数: {result.request_count}")
    print(f"  耗时: {result.took:.2f}秒")
    return result


# ==================== 示例2：混合操作与部分失败 ====================
def example_mixed_bulk():
    """在一次调用中执行多种写入操作."""
    try:
        result = bulk_tool.bulk(
            "users",
            index=[BulkOperation(BulkAction.INDEX, "8", {"name": "郑十", "city": "天津"})],
            create=[BulkOperation(BulkAction.CREATE, "7", {"name": "吴九", "city": "重庆"})],
            update=[BulkOperation(BulkAction.UPDATE, "1", {"city": "成都"})],
            delete=[BulkOperation(BulkAction.DELETE, "2")],
            refresh="wait_for",
        )
    except BulkResponseError as e:
        # 部分文档失败时整个调用终止，失败项可用于重新入队
        print(f"部分失败:\n{e.get_error_summary()}")
        return None
    except BulkRetryExhaustedError as e:
        print(f"超时重试耗尽: {e}")
        return None

    print(f"混合操作结果: 提交={result.success}, 丢弃={len(result.discarded)}")
    return result


# ==================== 示例3：请求埋点 ====================
def example_instrumentation():
    """订阅每次批量请求的埋点事件."""

    def on_bulk(event: BulkRequestEvent) -> None:
        status = "失败" if event.error else "成功"
        print(
            f"[{event.index_name}] {status}, 耗时 {event.runtime:.3f}s, "
            f"统计 {({k.value: v for k, v in event.body_stats.items() if v})}"
        )

    bulk_tool.subscribe(on_bulk)
    try:
        bulk_tool.bulk_delete("users", ["7", "8"])
    finally:
        bulk_tool.unsubscribe(on_bulk)


# ==================== 示例4：流式批量处理 ====================
def example_bulk_stream():
    """使用流式处理处理大量数据."""

    def generate_documents():
        for i in range(100000):
            yield BulkOperation(
                action=BulkAction.INDEX,
                doc_id=f"log_{i}",
                source={
                    "timestamp": f"2024-01-{i % 31 + 1:02d}T{i % 24:02d}:00:00",
                    "level": ["INFO", "WARNING", "ERROR"][i % 3],
                    "message": f"日志消息 {i}",
                },
            )

    def progress_callback(current, total, batch_result):
        print(f"已处理: {current}, 当前批次请求数: {batch_result.request_count}")

    result = bulk_tool.bulk_stream(
        operations=generate_documents(),
        index_name="logs",
        progress_callback=progress_callback,
    )
    print(f"流式处理完成: 总数={result.total}, 提交={result.success}")
    return result


# ==================== 示例5：直接使用协调器 ====================
def example_coordinator():
    """使用自定义执行器驱动 BulkCoordinator.

    可以在独立线程中为每组文档创建协调器，并通过 cancel_event 在进程退出时
    中断正在进行的退避等待。
    """
    cancel_event = threading.Event()
    coordinator = BulkCoordinator(
        index=[BulkOperation(BulkAction.INDEX, "1", {"name": "张三"})],
        delete=[BulkOperation(BulkAction.DELETE, "3")],
        config=BulkConfig(oversized_policy=OversizedDocumentPolicy.RAISE),
        cancel_event=cancel_event,
    )

    def submit(request):
        response = es_client.bulk(index="users", operations=request.payload())
        return response.body

    for request in coordinator.each_request(submit):
        print(f"已提交: {request}")


# ==================== 主函数 ====================
def main():
    """运行所有示例."""
    print("=" * 50)
    print("批量写入工具示例")
    print("=" * 50)

    print("\n1. 批量索引示例")
    print("-" * 50)
    example_bulk_index()

    print("\n2. 混合操作示例")
    print("-" * 50)
    example_mixed_bulk()

    print("\n3. 请求埋点示例")
    print("-" * 50)
    example_instrumentation()

    print("\n4. 流式批量处理示例")
    print("-" * 50)
    # 取消注释以下代码以运行流式处理示例
    # example_bulk_stream()

    print("\n5. 协调器示例")
    print("-" * 50)
    example_coordinator()

    print("\n" + "=" * 50)
    print("所有示例运行完成！")
    print("=" * 50)


if __name__ == "__main__":
    main()
