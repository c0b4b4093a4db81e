"""
Query keys for consistent caching.

Keys are hierarchical tuples so a mutation can invalidate a whole family
with one prefix, e.g. ("labor",) covers every labor query.
"""
from typing import Tuple


class LaborKeys:
    all: Tuple[str, ...] = ("labor",)

    @classmethod
    def by_operation(cls, operation_id: str) -> tuple:
        return cls.all + ("operation", str(operation_id))

    @classmethod
    def summary(cls, operation_id: str) -> tuple:
        return cls.by_operation(operation_id) + ("summary",)


class MaterialKeys:
    all: Tuple[str, ...] = ("materials",)

    @classmethod
    def by_operation(cls, operation_id: str) -> tuple:
        return cls.all + ("operation", str(operation_id))

    @classmethod
    def summary(cls, operation_id: str) -> tuple:
        return cls.by_operation(operation_id) + ("summary",)


class NcrKeys:
    all: Tuple[str, ...] = ("ncrs",)

    @classmethod
    def by_operation(cls, operation_id: str) -> tuple:
        return cls.all + ("operation", str(operation_id))

    @classmethod
    def summary(cls, operation_id: str) -> tuple:
        return cls.by_operation(operation_id) + ("summary",)


class QualityCheckKeys:
    all: Tuple[str, ...] = ("quality_checks",)

    @classmethod
    def by_operation(cls, operation_id: str) -> tuple:
        return cls.all + ("operation", str(operation_id))


class HealthKeys:
    all: Tuple[str, ...] = ("health",)

    @classmethod
    def basic(cls) -> tuple:
        return cls.all + ("basic",)
