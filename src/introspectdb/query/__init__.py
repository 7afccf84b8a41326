"""Statement execution, metrics and the escape-hatch query builder.

Every statement, whether issued by a repository, the relationship engine,
a ``QueryBuilder`` or ``IntrospectDB.execute()``, runs through one
``QueryExecutor``. ``MetricsExecutor`` wraps the base executor when metrics
are enabled.
"""

from introspectdb.query.builder import QueryBuilder
from introspectdb.query.executor import (
    ExecutionResult,
    MetricsExecutor,
    QueryExecutor,
    SQLAlchemyExecutor,
)
from introspectdb.query.metrics import MetricsCollector

__all__ = [
    "QueryBuilder",
    "QueryExecutor",
    "SQLAlchemyExecutor",
    "MetricsExecutor",
    "ExecutionResult",
    "MetricsCollector",
]
