from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set


class Operation(str, Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    MERGE = "MERGE"
    TRUNCATE = "TRUNCATE"
    REFERENCE = "REFERENCE"
    DYNAMIC_SQL = "DYNAMIC_SQL"


class Strategy(str, Enum):
    ENHANCED = "enhanced"
    BASIC = "basic"
    SIMPLE = "simple"
    NONE = "none"


STRATEGY_CONFIDENCE = {
    Strategy.ENHANCED: 1.0,
    Strategy.BASIC: 0.7,
    Strategy.SIMPLE: 0.3,
    Strategy.NONE: 0.0,
}


class ErrorCode(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    EMPTY_DEFINITION = "EMPTY_DEFINITION"
    STRATEGY_FAILURE = "STRATEGY_FAILURE"
    ALL_STRATEGIES_FAILED = "ALL_STRATEGIES_FAILED"
    EXTERNAL_FETCH_ERROR = "EXTERNAL_FETCH_ERROR"
    TIMEOUT = "TIMEOUT"
    TRUNCATED = "TRUNCATED"
    NORMALIZER_FALLBACK = "NORMALIZER_FALLBACK"
    UNRESOLVED_DYNAMIC_SQL = "UNRESOLVED_DYNAMIC_SQL"
    NO_TABLES = "NO_TABLES"


class SqlUsageError(Exception):
    """Base class for errors raised inside the analysis pipeline."""


class AdapterError(SqlUsageError):
    """A catalog adapter could not list tables or fetch a definition."""


# Per-occurrence weights; keyword weights follow the clause the table was found in.
OPERATION_WEIGHTS = {
    "SELECT": 1,
    "FROM": 2,
    "JOIN": 2,
    "USING": 2,
    "INTO": 2,
    "INSERT": 3,
    "UPDATE": 3,
    "DELETE": 3,
    "MERGE": 3,
    "TRUNCATE": 3,
    "REFERENCE": 1,
    "DYNAMIC_SQL": 1,
}

WRITE_OPERATIONS = {Operation.INSERT, Operation.UPDATE, Operation.DELETE, Operation.MERGE, Operation.TRUNCATE}


@dataclass(frozen=True)
class Diagnostic:
    code: ErrorCode
    message: str
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "stage": self.stage}


@dataclass
class TableUsage:
    table_name: str
    key: str
    operations: Set[Operation] = field(default_factory=set)
    confidence: float = 0.0
    positions: List[int] = field(default_factory=list)

    def add(self, operations: Iterable[Operation], position: int, weight: float):
        self.operations.update(operations)
        self.positions.append(position)
        self.confidence += weight

    def finalized_operations(self) -> List[str]:
        ops = set(self.operations)
        if len(ops) > 1:
            ops.discard(Operation.REFERENCE)
        return sorted(op.value for op in ops)

    def to_record(self) -> "TableUsageRecord":
        operations = self.finalized_operations()
        return TableUsageRecord(
            referenced_object=self.table_name,
            operations=operations,
            is_selected=int("SELECT" in operations),
            is_updated=int("UPDATE" in operations),
            is_insert_all=int("INSERT" in operations),
            is_delete=int("DELETE" in operations),
            confidence=self.confidence,
            positions=len(self.positions),
        )


@dataclass(frozen=True)
class TableUsageRecord:
    referenced_object: str
    operations: List[str]
    is_selected: int = 0
    is_updated: int = 0
    is_insert_all: int = 0
    is_delete: int = 0
    confidence: float = 0.0
    positions: int = 0
    referenced_object_type: str = "Table"

    @property
    def dependency_type(self) -> str:
        return ", ".join(self.operations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "referenced_object": self.referenced_object,
            "referenced_object_type": self.referenced_object_type,
            "dependency_type": self.dependency_type,
            "operations": list(self.operations),
            "is_selected": self.is_selected,
            "is_updated": self.is_updated,
            "is_insert_all": self.is_insert_all,
            "is_delete": self.is_delete,
            "confidence": self.confidence,
            "positions": self.positions,
        }


@dataclass
class AnalysisMetadata:
    database: str
    object_name: str
    strategy: Strategy = Strategy.NONE
    confidence: float = 0.0
    diagnostics: List[Diagnostic] = field(default_factory=list)
    elapsed_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "database": self.database,
            "objectName": self.object_name,
            "strategy": self.strategy.value,
            "confidence": self.confidence,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "elapsedMs": round(self.elapsed_ms, 3),
        }


@dataclass
class AnalysisResult:
    depends_on: List[TableUsageRecord]
    metadata: AnalysisMetadata
    referenced_by: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def confidence(self) -> float:
        return self.metadata.confidence

    @property
    def strategy(self) -> Strategy:
        return self.metadata.strategy

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return self.metadata.diagnostics

    @property
    def table_names(self) -> List[str]:
        return [record.referenced_object for record in self.depends_on]

    def has_diagnostic(self, code: ErrorCode) -> bool:
        return any(d.code == code for d in self.metadata.diagnostics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dependsOn": [record.to_dict() for record in self.depends_on],
            "referencedBy": list(self.referenced_by),
            "metadata": self.metadata.to_dict(),
        }


def records_from_usages(usages: Iterable[TableUsage]) -> List[TableUsageRecord]:
    """Drop zero-confidence usages and order the rest by confidence, then name."""
    records = [usage.to_record() for usage in usages if usage.confidence > 0]
    return sorted(records, key=lambda r: (-r.confidence, r.referenced_object.upper()))


def empty_result(
    database: str,
    object_name: str,
    confidence: float,
    diagnostics: Optional[List[Diagnostic]] = None,
    strategy: Strategy = Strategy.NONE,
) -> AnalysisResult:
    return AnalysisResult(
        depends_on=[],
        metadata=AnalysisMetadata(
            database=database,
            object_name=object_name,
            strategy=strategy,
            confidence=confidence,
            diagnostics=list(diagnostics or []),
        ),
    )
