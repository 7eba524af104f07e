"""Service exports."""

from . import narrator, query_engine, records, sql_generator, sql_guard, storage, validation, workflows

__all__ = [
    "narrator",
    "query_engine",
    "records",
    "sql_generator",
    "sql_guard",
    "storage",
    "validation",
    "workflows",
]
