"""ElasticBulk 类型定义模块."""

from typing import Any, Callable, Dict

# 文档源数据类型
SourceDict = Dict[str, Any]

# 批量操作元数据字典类型
# 格式: {"index": {"_id": "1", "routing": "r1"}}
ActionDict = Dict[str, Dict[str, Any]]

# 请求执行器类型
# 参数为 RequestBody，返回批量接口响应；超时、请求体过大等情况以异常形式抛出
Submitter = Callable[[Any], Any]
