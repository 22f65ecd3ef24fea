import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .models import (
    OPERATION_WEIGHTS,
    STRATEGY_CONFIDENCE,
    Diagnostic,
    ErrorCode,
    Operation,
    Strategy,
    TableUsage,
    TableUsageRecord,
    records_from_usages,
)
from .normalizer import NormalizedText
from .resolver import UsageResolver
from .structure import extract_structure
from .table_index import TableDescriptor, TableIndex, strip_brackets
from .tokens import DOT, WORD, name_parts, tokenize

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 15

_PART = r"(?:\[[^\]]*\]|[\w#@$]+)"
_NAME = rf"(?P<name>{_PART}(?:\s*\.\s*(?:{_PART})?)*)"
_TOP = r"(?:TOP\s*(?:\([^)]*\)|\d+)\s*(?:PERCENT\s+)?)?"
_ALIAS = r"\s+(?:AS\s+)?(?P<alias>[\w$]+|\[[^\]]*\])"

WRITE_PATTERNS: List[Tuple[Operation, str, re.Pattern]] = [
    (Operation.TRUNCATE, "TRUNCATE", re.compile(rf"\bTRUNCATE\s+TABLE\s+{_NAME}")),
    (Operation.MERGE, "MERGE", re.compile(rf"\bMERGE\s+{_TOP}(?:INTO\s+)?{_NAME}")),
    (Operation.INSERT, "INSERT", re.compile(rf"\bINSERT\s+{_TOP}(?:INTO\s+)?{_NAME}")),
    (Operation.UPDATE, "UPDATE", re.compile(rf"\bUPDATE\s+{_TOP}{_NAME}")),
    (Operation.DELETE, "DELETE", re.compile(rf"\bDELETE\s+{_TOP}(?:FROM\s+)?{_NAME}")),
    (Operation.INSERT, "INTO", re.compile(rf"\bINTO\s+{_NAME}")),
]
READ_PATTERN = re.compile(rf"\b(?P<keyword>FROM|JOIN|USING)\s+{_NAME}")
ALIAS_PATTERN = re.compile(_ALIAS)
NEXT_ITEM_PATTERN = re.compile(rf"\s*,\s*{_NAME}")
CTE_PATTERN = re.compile(r"(?:\bWITH|,)\s*(?P<name>[\w$]+|\[[^\]]*\])\s*(?:\([^)]*\)\s*)?AS\s*\(")

# keywords that never name an alias in the Basic tier
_NON_ALIASES = {
    "AS", "ON", "WHERE", "WITH", "JOIN", "INNER", "LEFT", "RIGHT", "FULL", "CROSS", "OUTER",
    "APPLY", "GROUP", "ORDER", "HAVING", "UNION", "EXCEPT", "INTERSECT", "SET", "SELECT",
    "INSERT", "UPDATE", "DELETE", "MERGE", "OPTION", "OUTPUT", "WHEN", "FOR", "PIVOT", "UNPIVOT",
    "BEGIN", "END", "RETURN", "IF", "ELSE", "GO", "EXEC", "EXECUTE", "DECLARE", "VALUES", "USING", "INTO",
}


@dataclass
class TierOutcome:
    strategy: Strategy
    confidence: float
    usages: List[TableUsage] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def records(self) -> List[TableUsageRecord]:
        return records_from_usages(self.usages)


def _record(usages: Dict[str, TableUsage], table: TableDescriptor, operation: Operation, position: int, weight: float):
    usage = usages.get(table.key)
    if usage is None:
        usage = TableUsage(table_name=table.display_name, key=table.key)
        usages[table.key] = usage
    usage.add({operation}, position, weight)


class AnalysisStrategy:
    """One tier of the analysis chain."""

    strategy: Strategy = Strategy.NONE

    @property
    def name(self) -> str:
        return self.strategy.value

    def analyze(self, normalized: NormalizedText, index: TableIndex) -> Tuple[List[TableUsage], List[Diagnostic]]:
        raise NotImplementedError


class EnhancedStrategy(AnalysisStrategy):
    strategy = Strategy.ENHANCED

    def __init__(self, dialect: str = "tsql"):
        self.dialect = dialect

    def analyze(self, normalized, index):
        structure = extract_structure(normalized)
        usages = UsageResolver(index, dialect=self.dialect).resolve(structure)
        return usages, list(structure.diagnostics)


class BasicStrategy(AnalysisStrategy):
    """Keyword-anchored regular expressions over the normalized text."""

    strategy = Strategy.BASIC

    @staticmethod
    def _lookup(raw_name: str, index: TableIndex, suppressed: Set[str],
                aliases: Optional[Dict[str, TableDescriptor]] = None) -> Optional[TableDescriptor]:
        parts = [strip_brackets(p.strip()) for p in raw_name.split(".")]
        if any(p.startswith(("#", "@")) for p in parts):
            return None
        if len(parts) == 1:
            if parts[0] in suppressed:
                return None
            if aliases and parts[0] in aliases:
                return aliases[parts[0]]
        return index.find_parts(parts)

    @staticmethod
    def _read_items(text: str):
        """Yield (keyword, name, start, alias) for each FROM/JOIN/USING source, comma lists included."""
        for match in READ_PATTERN.finditer(text):
            keyword, item = match.group("keyword"), match
            while item is not None:
                end = item.end("name")
                alias = None
                alias_match = ALIAS_PATTERN.match(text, end)
                if alias_match:
                    candidate = strip_brackets(alias_match.group("alias"))
                    # a following keyword is left in place for the next match
                    if candidate not in _NON_ALIASES:
                        alias = candidate
                        end = alias_match.end()
                yield keyword, item.group("name"), item.start("name"), alias
                item = NEXT_ITEM_PATTERN.match(text, end) if keyword == "FROM" else None

    def analyze(self, normalized, index):
        text = normalized.text
        suppressed = {strip_brackets(m.group("name")) for m in CTE_PATTERN.finditer(text)}
        usages: Dict[str, TableUsage] = {}
        consumed: Set[int] = set()

        reads = []
        aliases: Dict[str, TableDescriptor] = {}
        for keyword, name, start, alias in self._read_items(text):
            table = self._lookup(name, index, suppressed)
            if table is None:
                if alias:
                    suppressed.add(alias)
                continue
            if alias:
                aliases[alias] = table
            reads.append((keyword, start, table))

        targets: Set[str] = set()
        for operation, keyword, pattern in WRITE_PATTERNS:
            for match in pattern.finditer(text):
                start = match.start("name")
                if start in consumed:
                    continue
                table = self._lookup(match.group("name"), index, suppressed, aliases)
                if table is None:
                    continue
                consumed.add(start)
                if operation in (Operation.UPDATE, Operation.DELETE):
                    targets.add(table.key)
                _record(usages, table, operation, start, OPERATION_WEIGHTS[keyword])

        for keyword, start, table in reads:
            if start in consumed:
                continue
            # UPDATE t ... FROM t: the joined target is not a separate read
            if table.key in targets and table.key in usages and keyword == "FROM":
                continue
            consumed.add(start)
            _record(usages, table, Operation.SELECT, start, OPERATION_WEIGHTS[keyword])

        return list(usages.values()), []


class SimpleStrategy(AnalysisStrategy):
    """Presence-only scan; nearby keywords only weight the ordering."""

    strategy = Strategy.SIMPLE

    def __init__(self, context_window: int = DEFAULT_CONTEXT_WINDOW):
        self.context_window = context_window

    def _context_weight(self, tokens, i: int) -> float:
        weight = 0.0
        low = max(0, i - self.context_window)
        high = min(len(tokens), i + self.context_window + 1)
        for j in range(low, high):
            tok = tokens[j]
            if j != i and tok.kind == WORD and tok.text in OPERATION_WEIGHTS:
                weight += OPERATION_WEIGHTS[tok.text] / (abs(i - j) + 1)
        return weight

    def analyze(self, normalized, index):
        tokens = tokenize(normalized.text)
        parts = name_parts(tokens)
        usages: Dict[str, TableUsage] = {}
        i = 0
        while i < len(tokens):
            tok = tokens[i]
            if not tok.is_name or tok.is_temporary or (i > 0 and tokens[i - 1].kind == DOT):
                i += 1
                continue
            match = index.match_at(parts, i)
            if match is None:
                i += 1
                continue
            table, consumed = match
            weight = OPERATION_WEIGHTS["REFERENCE"] + self._context_weight(tokens, i)
            _record(usages, table, Operation.REFERENCE, tok.pos, weight)
            i += consumed
        return list(usages.values()), []


def default_strategies(dialect: str = "tsql", context_window: int = DEFAULT_CONTEXT_WINDOW) -> List[AnalysisStrategy]:
    return [EnhancedStrategy(dialect=dialect), BasicStrategy(), SimpleStrategy(context_window=context_window)]


class TieredAnalyzer:
    """Run strategies in order; the first one that returns is final."""

    def __init__(self, strategies: Optional[Sequence[AnalysisStrategy]] = None):
        self.strategies = list(strategies) if strategies is not None else default_strategies()

    def run(self, normalized: NormalizedText, index: TableIndex) -> TierOutcome:
        diagnostics: List[Diagnostic] = []
        for strategy in self.strategies:
            try:
                usages, extra = strategy.analyze(normalized, index)
            except Exception as e:
                logger.warning(f"{strategy.name} strategy failed, trying next tier: {e}")
                diagnostics.append(
                    Diagnostic(ErrorCode.STRATEGY_FAILURE, f"{strategy.name} strategy failed: {e}", strategy.name)
                )
                continue
            logger.debug(f"{strategy.name} strategy found {len(usages)} tables")
            return TierOutcome(
                strategy=strategy.strategy,
                confidence=STRATEGY_CONFIDENCE[strategy.strategy],
                usages=usages,
                diagnostics=diagnostics + list(extra),
            )

        logger.error("All analysis strategies failed")
        diagnostics.append(Diagnostic(ErrorCode.ALL_STRATEGIES_FAILED, "All analysis strategies failed", "analyze"))
        return TierOutcome(strategy=Strategy.NONE, confidence=0.0, diagnostics=diagnostics)
