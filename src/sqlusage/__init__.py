"""Table usage analysis for stored SQL object definitions."""

from .models import (
    AdapterError,
    AnalysisMetadata,
    AnalysisResult,
    Diagnostic,
    ErrorCode,
    Operation,
    SqlUsageError,
    Strategy,
    TableUsageRecord,
)
from .normalizer import normalize
from .result_cache import CacheSweeper, ResultCache
from .service import DependencyService
from .table_index import TableDescriptor, TableIndex, build_index

__all__ = [
    "AdapterError",
    "AnalysisMetadata",
    "AnalysisResult",
    "CacheSweeper",
    "DependencyService",
    "Diagnostic",
    "ErrorCode",
    "Operation",
    "ResultCache",
    "SqlUsageError",
    "Strategy",
    "TableDescriptor",
    "TableIndex",
    "TableUsageRecord",
    "build_index",
    "normalize",
]
