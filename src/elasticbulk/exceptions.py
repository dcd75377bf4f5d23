"""ElasticBulk 异常定义模块."""


class ElasticBulkError(Exception):
    """ElasticBulk 基础异常类."""

    pass
