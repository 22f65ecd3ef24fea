import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

import sqlglot
from sqlglot import exp

from .models import OPERATION_WEIGHTS, Operation, TableUsage
from .normalizer import normalize
from .structure import FragmentKind, StatementKind, Structure, StructuralFragment
from .table_index import TableDescriptor, TableIndex
from .tokens import COMMA, DOT, LPAREN, RPAREN, VARIABLE, Token, matching_paren, name_parts, tokenize

logger = logging.getLogger(__name__)

WRITE_KINDS = {
    StatementKind.INSERT: Operation.INSERT,
    StatementKind.UPDATE: Operation.UPDATE,
    StatementKind.DELETE: Operation.DELETE,
    StatementKind.MERGE: Operation.MERGE,
    StatementKind.TRUNCATE: Operation.TRUNCATE,
}
MERGE_ACTIONS = {"UPDATE": Operation.UPDATE, "DELETE": Operation.DELETE, "INSERT": Operation.INSERT}
SOURCE_CLAUSES = ("FROM", "JOIN", "USING")
CURSOR_LEADERS = {"FETCH", "OPEN", "CLOSE", "DEALLOCATE"}
ALIAS_STOP_WORDS = {
    "AS", "WITH", "ON", "WHERE", "PIVOT", "UNPIVOT", "TABLESAMPLE", "FOR", "SET", "JOIN",
    "INNER", "LEFT", "RIGHT", "FULL", "CROSS", "OUTER", "APPLY", "OPTION", "OUTPUT",
}


@dataclass
class TableRef:
    table: TableDescriptor
    position: int
    clause: str
    alias: Optional[str] = None


@dataclass
class ResolutionScope:
    """Alias and temporary-name state for one analysis call."""

    temp_names: Set[str] = field(default_factory=set)
    aliases: Dict[str, TableDescriptor] = field(default_factory=dict)
    consumed: Set[int] = field(default_factory=set)
    usages: Dict[str, TableUsage] = field(default_factory=dict)

    def record(self, table: TableDescriptor, operations: Iterable[Operation], position: int, weight: float):
        usage = self.usages.get(table.key)
        if usage is None:
            usage = TableUsage(table_name=table.display_name, key=table.key)
            self.usages[table.key] = usage
        usage.add(operations, position, weight)


def _split_items(tokens: Sequence[Token]) -> List[List[Token]]:
    items: List[List[Token]] = [[]]
    depth = 0
    for tok in tokens:
        if tok.kind == LPAREN:
            depth += 1
        elif tok.kind == RPAREN:
            depth -= 1
        elif depth == 0 and tok.kind == COMMA:
            items.append([])
            continue
        items[-1].append(tok)
    return [item for item in items if item]


def _dotted_name(tokens: Sequence[Token], i: int) -> int:
    """Index just past a dotted name such as ``db..t`` starting at ``i``."""
    n = len(tokens)
    if i >= n or not tokens[i].is_name:
        return i
    j = i + 1
    while j < n and tokens[j].kind == DOT:
        j += 1
        if j < n and tokens[j].is_name:
            j += 1
    return j


def _parts(tokens: Sequence[Token]) -> List[str]:
    parts = [""]
    for tok in tokens:
        if tok.kind == DOT:
            parts.append("")
        else:
            parts[-1] = tok.value
    return parts


class UsageResolver:
    def __init__(self, index: TableIndex, dialect: str = "tsql"):
        self.index = index
        self.dialect = dialect

    def resolve(self, structure: Structure) -> List[TableUsage]:
        scope = ResolutionScope(temp_names=set(structure.temp_names))
        fragments = [f for f in structure.fragments if f.leader not in CURSOR_LEADERS]

        refs_by_fragment: Dict[int, List[TableRef]] = {}
        local_aliases: Dict[int, Dict[str, TableDescriptor]] = {}
        for fragment in fragments:
            aliases: Dict[str, TableDescriptor] = {}
            refs: List[TableRef] = []
            for clause in SOURCE_CLAUSES:
                for content in fragment.clause(clause):
                    refs.extend(self._parse_references(content, clause, scope, aliases))
            refs_by_fragment[id(fragment)] = refs
            local_aliases[id(fragment)] = aliases

        for fragment in fragments:
            self._resolve_fragment(
                fragment, refs_by_fragment[id(fragment)], local_aliases[id(fragment)], scope
            )

        for fragment in structure.dynamic_sql:
            self._resolve_dynamic(fragment, scope)

        self._resolve_residual(structure.tokens, scope)
        return list(scope.usages.values())

    def _lookup(self, name_tokens: Sequence[Token], scope: ResolutionScope,
                local: Optional[Dict[str, TableDescriptor]] = None) -> Optional[TableDescriptor]:
        if not name_tokens or any(t.is_temporary for t in name_tokens):
            return None
        parts = _parts(name_tokens)
        if len(parts) == 1:
            key = parts[0].upper()
            if key in scope.temp_names:
                return None
            if local and key in local:
                return local[key]
            if key in scope.aliases:
                return scope.aliases[key]
        return self.index.find_parts(parts)

    def _read_alias(self, item: Sequence[Token], i: int) -> Optional[Token]:
        if i < len(item) and item[i].is_word("AS"):
            i += 1
        if i < len(item) and item[i].is_name and not item[i].is_word(*ALIAS_STOP_WORDS):
            return item[i]
        return None

    def _parse_reference(self, item: Sequence[Token], clause: str, scope: ResolutionScope,
                         aliases: Dict[str, TableDescriptor]) -> Optional[TableRef]:
        if not item:
            return None
        if item[0].kind == LPAREN:
            alias = self._read_alias(item, matching_paren(item, 0) + 1)
            if alias is not None:
                scope.temp_names.add(alias.value.upper())
            return None

        if item[0].kind == VARIABLE:
            alias = self._read_alias(item, 1)
            if alias is not None:
                scope.temp_names.add(alias.value.upper())
            return None

        end = _dotted_name(item, 0)
        if end == 0:
            return None
        name_tokens = item[:end]
        if end < len(item) and item[end].kind == LPAREN and not item[end - 1].is_word("WITH"):
            # table-valued function call
            alias = self._read_alias(item, matching_paren(item, end) + 1)
            if alias is not None:
                scope.temp_names.add(alias.value.upper())
            return None

        j = end
        if j < len(item) and item[j].is_word("WITH") and j + 1 < len(item) and item[j + 1].kind == LPAREN:
            j = matching_paren(item, j + 1) + 1
        alias = self._read_alias(item, j)

        table = self._lookup(name_tokens, scope)
        if table is None:
            if alias is not None and any(t.is_temporary or t.value.upper() in scope.temp_names for t in name_tokens):
                scope.temp_names.add(alias.value.upper())
            return None

        scope.consumed.update(t.pos for t in name_tokens)
        alias_name = None
        if alias is not None:
            alias_name = alias.value.upper()
            scope.consumed.add(alias.pos)
            aliases[alias_name] = table
            scope.aliases[alias_name] = table
        return TableRef(table=table, position=name_tokens[0].pos, clause=clause, alias=alias_name)

    def _parse_references(self, content: Sequence[Token], clause: str, scope: ResolutionScope,
                          aliases: Dict[str, TableDescriptor]) -> List[TableRef]:
        refs = []
        for item in _split_items(content):
            ref = self._parse_reference(item, clause, scope, aliases)
            if ref is not None:
                refs.append(ref)
        return refs

    def _resolve_fragment(self, fragment: StructuralFragment, refs: List[TableRef],
                          aliases: Dict[str, TableDescriptor], scope: ResolutionScope):
        kind = fragment.effective_kind
        target: Optional[TableDescriptor] = None

        if kind in WRITE_KINDS and fragment.target:
            target = self._resolve_target(fragment.target, scope, aliases)
            if target is not None:
                operations = {WRITE_KINDS[kind]}
                if kind == StatementKind.MERGE:
                    for content in fragment.clause("WHEN"):
                        operations.update(MERGE_ACTIONS[t.text] for t in content if t.is_word(*MERGE_ACTIONS))
                scope.record(target, operations, fragment.target[0].pos, OPERATION_WEIGHTS[kind.value])

        for ref in refs:
            if target is not None and ref.table is target and kind in (StatementKind.UPDATE, StatementKind.DELETE):
                continue
            scope.record(ref.table, {Operation.SELECT}, ref.position, OPERATION_WEIGHTS[ref.clause])

        for content in fragment.clause("INTO"):
            into = self._resolve_target(content, scope, aliases)
            if into is not None:
                scope.record(into, {Operation.INSERT}, content[0].pos, OPERATION_WEIGHTS["INTO"])

    def _resolve_target(self, tokens: Sequence[Token], scope: ResolutionScope,
                        aliases: Dict[str, TableDescriptor]) -> Optional[TableDescriptor]:
        end = _dotted_name(tokens, 0)
        if end == 0:
            return None
        name_tokens = tokens[:end]
        table = self._lookup(name_tokens, scope, aliases)
        if table is None:
            return None
        scope.consumed.update(t.pos for t in name_tokens)
        j = end
        if j < len(tokens) and tokens[j].is_word("WITH") and j + 1 < len(tokens) and tokens[j + 1].kind == LPAREN:
            j = matching_paren(tokens, j + 1) + 1
        alias = self._read_alias(tokens, j)
        if alias is not None:
            alias_name = alias.value.upper()
            scope.consumed.add(alias.pos)
            aliases[alias_name] = table
            scope.aliases[alias_name] = table
        return table

    def _resolve_dynamic(self, fragment: StructuralFragment, scope: ResolutionScope):
        if fragment.kind != FragmentKind.DYNAMIC_SQL or not fragment.payload:
            return
        for table in self._tables_from_payload(fragment.payload):
            scope.record(table, {Operation.DYNAMIC_SQL}, fragment.position, OPERATION_WEIGHTS["DYNAMIC_SQL"])

    def _tables_from_payload(self, payload: str) -> List[TableDescriptor]:
        """Static table names inside a dynamic SQL literal."""
        found: List[TableDescriptor] = []
        try:
            for stmt in sqlglot.parse(payload, read=self.dialect):
                if stmt is None:
                    continue
                cte_names = {cte.alias_or_name.upper() for cte in stmt.find_all(exp.CTE)}
                for table in stmt.find_all(exp.Table):
                    name = table.name
                    if not name or name.upper() in cte_names or name.startswith("#"):
                        continue
                    parts = [table.db, name] if table.db else [name]
                    descriptor = self.index.find_parts(parts)
                    if descriptor is not None and descriptor not in found:
                        found.append(descriptor)
            return found
        except Exception as e:
            logger.debug(f"sqlglot could not parse dynamic SQL, scanning tokens instead: {e}")

        tokens = tokenize(normalize(payload).text)
        parts = name_parts(tokens)
        i = 0
        while i < len(tokens):
            if not tokens[i].is_name or tokens[i].is_temporary or (i > 0 and tokens[i - 1].kind == DOT):
                i += 1
                continue
            match = self.index.match_at(parts, i)
            if match is None:
                i += 1
                continue
            descriptor, consumed = match
            if descriptor not in found:
                found.append(descriptor)
            i += consumed
        return found

    def _resolve_residual(self, tokens: Sequence[Token], scope: ResolutionScope):
        """Record every known table not already attributed to a clause as a plain reference."""
        parts = name_parts(tokens)
        n = len(tokens)
        i = 0
        while i < n:
            tok = tokens[i]
            if (
                not tok.is_name
                or tok.is_temporary
                or tok.pos in scope.consumed
                or (i > 0 and tokens[i - 1].kind == DOT)
                or tok.value.upper() in scope.temp_names
                or tok.value.upper() in scope.aliases
            ):
                i += 1
                continue
            match = self.index.match_at(parts, i)
            if match is not None:
                table, consumed = match
                scope.record(table, {Operation.REFERENCE}, tok.pos, OPERATION_WEIGHTS["REFERENCE"])
                i += consumed
                continue
            if i + 1 < n and tokens[i + 1].kind == DOT:
                # qualifier of a column reference, e.g. Orders.Id
                table = self.index.find(tok.value)
                if table is not None:
                    scope.record(table, {Operation.REFERENCE}, tok.pos, OPERATION_WEIGHTS["REFERENCE"])
            i += 1


def resolve(structure: Structure, index: TableIndex, dialect: str = "tsql") -> List[TableUsage]:
    return UsageResolver(index, dialect=dialect).resolve(structure)
