import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .models import Diagnostic, ErrorCode
from .normalizer import NormalizedText
from .tokens import COMMA, DOT, LPAREN, NUMBER, OP, RPAREN, SEMI, STRING, VARIABLE, WORD, Token, matching_paren, tokenize

logger = logging.getLogger(__name__)


class FragmentKind(str, Enum):
    STATEMENT = "STATEMENT"
    CTE = "CTE"
    SUBQUERY = "SUBQUERY"
    DYNAMIC_SQL = "DYNAMIC_SQL"


class StatementKind(str, Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    MERGE = "MERGE"
    WITH = "WITH"
    EXEC = "EXEC"
    DECLARE = "DECLARE"
    IF = "IF"
    TRUNCATE = "TRUNCATE"
    UNKNOWN = "UNKNOWN"


STATEMENT_KEYWORDS = {
    "SELECT": StatementKind.SELECT,
    "INSERT": StatementKind.INSERT,
    "UPDATE": StatementKind.UPDATE,
    "DELETE": StatementKind.DELETE,
    "MERGE": StatementKind.MERGE,
    "WITH": StatementKind.WITH,
    "EXEC": StatementKind.EXEC,
    "EXECUTE": StatementKind.EXEC,
    "DECLARE": StatementKind.DECLARE,
    "IF": StatementKind.IF,
    "TRUNCATE": StatementKind.TRUNCATE,
}

OTHER_STARTERS = {
    "SET", "WHILE", "RETURN", "PRINT", "RAISERROR", "THROW", "CREATE", "ALTER", "DROP",
    "OPEN", "FETCH", "CLOSE", "DEALLOCATE", "GRANT", "DENY", "REVOKE", "USE", "WAITFOR",
    "GOTO", "BREAK", "CONTINUE", "COMMIT", "ROLLBACK",
}
STARTERS = set(STATEMENT_KEYWORDS) | OTHER_STARTERS
SEPARATORS = {"BEGIN", "END", "ELSE", "GO"}
DML_WORDS = {"SELECT", "INSERT", "UPDATE", "DELETE", "MERGE"}
SET_OPERATORS = {"UNION", "EXCEPT", "INTERSECT"}
# DML keywords after these belong to trigger, cursor, grant or foreign key syntax.
NON_STATEMENT_PREFIXES = {"FOR", "AFTER", "OF", "ON", "GRANT", "DENY", "REVOKE", "INSTEAD"}

CLAUSE_WORDS = {"SELECT", "FROM", "WHERE", "SET", "VALUES", "HAVING", "INTO", "USING", "OUTPUT", "OPTION", "ON", "WHEN"}
JOIN_WORDS = {"JOIN", "INNER", "LEFT", "RIGHT", "FULL", "CROSS", "OUTER", "APPLY"}
BY_CLAUSES = {"GROUP", "ORDER"}

TARGET_STOP_WORDS = {
    StatementKind.UPDATE: {"SET", "FROM", "WHERE", "OUTPUT", "OPTION"},
    StatementKind.INSERT: {"SELECT", "VALUES", "EXEC", "EXECUTE", "DEFAULT", "OUTPUT"},
    StatementKind.DELETE: {"FROM", "WHERE", "OUTPUT", "OPTION"} | JOIN_WORDS,
    StatementKind.MERGE: {"USING"},
    StatementKind.TRUNCATE: set(),
}

MAX_NESTING = 128


@dataclass
class StructuralFragment:
    kind: FragmentKind
    statement_kind: StatementKind
    tokens: List[Token]
    content: str = ""
    body_kind: Optional[StatementKind] = None
    target: List[Token] = field(default_factory=list)
    clauses: Dict[str, List[List[Token]]] = field(default_factory=dict)
    name: Optional[str] = None
    payload: str = ""
    depth: int = 0

    @property
    def leader(self) -> str:
        return self.tokens[0].text if self.tokens else ""

    @property
    def effective_kind(self) -> StatementKind:
        return self.body_kind or self.statement_kind

    @property
    def position(self) -> int:
        return self.tokens[0].pos if self.tokens else 0

    def clause(self, name: str) -> List[List[Token]]:
        return self.clauses.get(name, [])


@dataclass
class Structure:
    text: str
    tokens: List[Token]
    statements: List[StructuralFragment] = field(default_factory=list)
    ctes: List[StructuralFragment] = field(default_factory=list)
    subqueries: List[StructuralFragment] = field(default_factory=list)
    dynamic_sql: List[StructuralFragment] = field(default_factory=list)
    temp_names: Set[str] = field(default_factory=set)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def fragments(self) -> List[StructuralFragment]:
        return self.statements + self.ctes + self.subqueries


def classify(token: Optional[Token]) -> StatementKind:
    if token is None or token.kind != WORD:
        return StatementKind.UNKNOWN
    return STATEMENT_KEYWORDS.get(token.text, StatementKind.UNKNOWN)


def _looks_like_cte(tokens: Sequence[Token], i: int) -> bool:
    """``WITH name [(cols)] AS (`` as opposed to a table hint or an option."""
    j = i + 1
    if j >= len(tokens) or not tokens[j].is_name:
        return False
    j += 1
    if j < len(tokens) and tokens[j].kind == LPAREN:
        j = matching_paren(tokens, j) + 1
    return j + 1 < len(tokens) and tokens[j].is_word("AS") and tokens[j + 1].kind == LPAREN


@dataclass
class _SplitState:
    kind: str = ""
    effective: str = ""
    main_seen: bool = False
    seen_select: bool = False
    seen_set: bool = False

    def note(self, token: Token, first: bool):
        if token.kind != WORD:
            return
        word = token.text
        if first:
            self.kind = self.effective = word
            return
        if self.kind == "WITH" and not self.main_seen and word in DML_WORDS:
            self.effective = word
            self.main_seen = True
        elif self.effective == "INSERT" and word == "SELECT":
            self.seen_select = True
        elif word == "SET":
            self.seen_set = True


def _starts_statement(tokens: Sequence[Token], i: int, current: List[Token], state: _SplitState) -> bool:
    if not current:
        return True
    word = tokens[i].text
    prev = current[-1]
    nxt = tokens[i + 1] if i + 1 < len(tokens) else None

    if word in DML_WORDS:
        if prev.kind == COMMA or (prev.kind == WORD and prev.text in NON_STATEMENT_PREFIXES):
            return False
        if word == "UPDATE" and nxt is not None and nxt.kind == LPAREN:
            return False
    if word == "SELECT" and prev.kind == WORD and prev.text in SET_OPERATORS | {"ALL"}:
        return False
    if word == "WITH":
        return _looks_like_cte(tokens, i)
    if state.kind == "WITH" and not state.main_seen and word in DML_WORDS:
        return False
    if state.effective == "INSERT" and word in ("SELECT", "EXEC", "EXECUTE") and not state.seen_select:
        return False
    if state.effective == "MERGE" and word in ("INSERT", "UPDATE", "DELETE"):
        return False
    if word == "SET" and (state.effective == "MERGE" or (state.effective == "UPDATE" and not state.seen_set)):
        return False
    return True


def split_statements(tokens: Sequence[Token]) -> List[List[Token]]:
    """Split a token stream on top-level terminators and statement-leading keywords."""
    statements: List[List[Token]] = []
    current: List[Token] = []
    state = _SplitState()
    depth = 0
    case_depth = 0

    def flush():
        nonlocal current, state, case_depth
        if current:
            statements.append(current)
        current = []
        state = _SplitState()
        case_depth = 0

    for i, tok in enumerate(tokens):
        if tok.kind == LPAREN:
            depth += 1
        elif tok.kind == RPAREN:
            depth = max(0, depth - 1)
        elif depth == 0 and tok.kind == SEMI:
            flush()
            continue
        elif depth == 0 and tok.kind == WORD:
            word = tok.text
            if word == "CASE":
                case_depth += 1
            elif word == "END" and case_depth:
                case_depth -= 1
            elif case_depth == 0:
                if word in SEPARATORS:
                    flush()
                    continue
                if word in STARTERS and _starts_statement(tokens, i, current, state):
                    flush()
        if depth == 0 or not current:
            state.note(tok, first=not current)
        current.append(tok)

    flush()
    return statements


def _skip_top(tokens: Sequence[Token], i: int) -> int:
    if i < len(tokens) and tokens[i].is_word("TOP"):
        i += 1
        if i < len(tokens) and tokens[i].kind == LPAREN:
            i = matching_paren(tokens, i) + 1
        elif i < len(tokens) and tokens[i].kind == NUMBER:
            i += 1
        if i < len(tokens) and tokens[i].is_word("PERCENT"):
            i += 1
    return i


def target_span(tokens: Sequence[Token], kind: StatementKind) -> Tuple[List[Token], int]:
    """Tokens of the leading write clause and the index where the clause map begins."""
    if kind not in TARGET_STOP_WORDS or not tokens:
        return [], 0

    i = _skip_top(tokens, 1)
    if kind == StatementKind.INSERT and i < len(tokens) and tokens[i].is_word("INTO"):
        i += 1
    elif kind == StatementKind.DELETE and i < len(tokens) and tokens[i].is_word("FROM"):
        i += 1
    elif kind == StatementKind.MERGE and i < len(tokens) and tokens[i].is_word("INTO"):
        i += 1
    elif kind == StatementKind.TRUNCATE and i < len(tokens) and tokens[i].is_word("TABLE"):
        i += 1

    start = i
    stops = TARGET_STOP_WORDS[kind]
    while i < len(tokens):
        tok = tokens[i]
        if tok.kind == SEMI:
            break
        if tok.kind == LPAREN:
            if kind == StatementKind.INSERT and not tokens[i - 1].is_word("WITH"):
                break
            i = matching_paren(tokens, i) + 1
            continue
        if tok.kind == WORD and tok.text in stops:
            break
        i += 1
    return list(tokens[start:i]), i


def extract_clauses(tokens: Sequence[Token], start: int = 0) -> Dict[str, List[List[Token]]]:
    """Group the top-level tokens after ``start`` under the clause keyword that precedes them."""
    clauses: Dict[str, List[List[Token]]] = {}
    current: Optional[str] = None
    content: List[Token] = []
    depth = 0
    case_depth = 0

    def flush():
        if current and content:
            clauses.setdefault(current, []).append(list(content))

    i = start
    n = len(tokens)
    while i < n:
        tok = tokens[i]
        if tok.kind == LPAREN:
            depth += 1
        elif tok.kind == RPAREN:
            depth -= 1
        elif depth == 0 and tok.kind == WORD:
            word = tok.text
            nxt = tokens[i + 1] if i + 1 < n else None
            name: Optional[str] = None
            skip = 1
            if word == "CASE":
                case_depth += 1
            elif word == "END" and case_depth:
                case_depth -= 1
            elif case_depth == 0:
                if word in JOIN_WORDS and not (word in ("LEFT", "RIGHT") and nxt is not None and nxt.kind == LPAREN):
                    if current == "JOIN" and not content:
                        i += 1
                        continue
                    name = "JOIN"
                elif word in BY_CLAUSES and nxt is not None and nxt.is_word("BY"):
                    name = f"{word} BY"
                    skip = 2
                elif word in SET_OPERATORS:
                    name = ""
                    if nxt is not None and nxt.is_word("ALL"):
                        skip = 2
                elif word in CLAUSE_WORDS:
                    name = word
            if name is not None:
                flush()
                current = name or None
                content = []
                i += skip
                continue
        if current:
            content.append(tok)
        i += 1

    flush()
    return clauses


class StructuralExtractor:
    """Recursive-descent walker producing statements, CTEs, subqueries and dynamic SQL."""

    def __init__(self, normalized: NormalizedText):
        self.normalized = normalized
        self.text = normalized.text
        self.structure = Structure(text=self.text, tokens=tokenize(self.text))
        self._assignments: Dict[str, List[int]] = {}

    def run(self) -> Structure:
        for statement_tokens in split_statements(self.structure.tokens):
            fragment = self._walk(statement_tokens, FragmentKind.STATEMENT, 0)
            if fragment is None:
                continue
            self.structure.statements.append(fragment)
            if fragment.leader in ("DECLARE", "SET", "SELECT"):
                self._record_assignments(statement_tokens)
            self._detect_dynamic_sql(statement_tokens)
        logger.debug(
            "Extracted %d statements, %d CTEs, %d subqueries, %d dynamic SQL fragments",
            len(self.structure.statements),
            len(self.structure.ctes),
            len(self.structure.subqueries),
            len(self.structure.dynamic_sql),
        )
        return self.structure

    def _content(self, tokens: Sequence[Token]) -> str:
        if not tokens:
            return ""
        last = tokens[-1]
        return self.text[tokens[0].pos : last.pos + len(last.text)]

    def _walk(self, tokens: List[Token], kind: FragmentKind, depth: int, name: Optional[str] = None):
        if not tokens:
            return None
        if depth > MAX_NESTING:
            self.structure.diagnostics.append(
                Diagnostic(ErrorCode.STRATEGY_FAILURE, "Nesting limit reached; inner fragments skipped", "structure")
            )
            return None

        statement_kind = classify(tokens[0])
        main = tokens
        if statement_kind == StatementKind.WITH:
            main = tokens[self._walk_ctes(tokens, depth) :]
        body_kind = classify(main[0]) if main and statement_kind == StatementKind.WITH else None
        effective = body_kind or statement_kind

        target, clause_start = target_span(main, effective)
        fragment = StructuralFragment(
            kind=kind,
            statement_kind=statement_kind,
            tokens=tokens,
            content=self._content(tokens),
            body_kind=body_kind,
            target=target,
            clauses=extract_clauses(main, clause_start),
            name=name,
            depth=depth,
        )
        self._walk_subqueries(main, depth)
        return fragment

    def _walk_ctes(self, tokens: List[Token], depth: int) -> int:
        """Register each CTE of a WITH list; returns the index of the main statement."""
        i = 1
        n = len(tokens)
        while i < n and tokens[i].is_name:
            cte_name = tokens[i].value
            j = i + 1
            if j < n and tokens[j].kind == LPAREN:
                j = matching_paren(tokens, j) + 1
            if not (j + 1 < n and tokens[j].is_word("AS") and tokens[j + 1].kind == LPAREN):
                break
            end = matching_paren(tokens, j + 1)
            self.structure.temp_names.add(cte_name)
            fragment = self._walk(tokens[j + 2 : end], FragmentKind.CTE, depth + 1, name=cte_name)
            if fragment is not None:
                self.structure.ctes.append(fragment)
            i = end + 1
            if i < n and tokens[i].kind == COMMA:
                i += 1
                continue
            break
        return i

    def _walk_subqueries(self, tokens: List[Token], depth: int):
        i = 0
        n = len(tokens)
        while i < n:
            if tokens[i].kind == LPAREN and i + 1 < n and tokens[i + 1].is_word("SELECT", "WITH"):
                end = matching_paren(tokens, i)
                fragment = self._walk(tokens[i + 1 : end], FragmentKind.SUBQUERY, depth + 1)
                if fragment is not None:
                    self.structure.subqueries.append(fragment)
                i = end + 1
                continue
            i += 1

    def _expand(self, tokens: Sequence[Token]) -> Tuple[List[int], List[str]]:
        """Literal indices of an argument expression, following recorded @variable assignments."""
        indices: List[int] = []
        unresolved: List[str] = []
        for tok in tokens:
            if tok.kind == STRING:
                indices.append(tok.literal_index)
            elif tok.kind == VARIABLE:
                if tok.text in self._assignments:
                    indices.extend(self._assignments[tok.text])
                else:
                    unresolved.append(tok.text)
        return indices, unresolved

    @staticmethod
    def _is_assign(tok: Token) -> bool:
        return tok.kind == OP and tok.text == "="

    def _record_assignments(self, tokens: List[Token]):
        """Remember the literal text assigned to @variables by DECLARE, SET and SELECT."""
        n = len(tokens)
        declare = tokens[0].is_word("DECLARE")
        i = 1
        while i < n:
            tok = tokens[i]
            if tok.kind != VARIABLE:
                i += 1
                continue
            j = i + 1
            if declare:
                # DECLARE @sql NVARCHAR(MAX) = ...
                while j < n and tokens[j].kind not in (COMMA, SEMI) and not self._is_assign(tokens[j]):
                    if tokens[j].kind == LPAREN:
                        j = matching_paren(tokens, j)
                    j += 1
            elif j < n and tokens[j].kind == OP and tokens[j].text == "+":
                j += 1
            if j >= n or not self._is_assign(tokens[j]):
                i = j + 1 if declare else i + 1
                continue
            appending = tokens[j - 1].kind == OP and tokens[j - 1].text == "+"
            k = j + 1
            rhs: List[Token] = []
            paren = 0
            while k < n:
                if tokens[k].kind == LPAREN:
                    paren += 1
                elif tokens[k].kind == RPAREN:
                    paren -= 1
                elif paren == 0 and tokens[k].kind == COMMA:
                    break
                rhs.append(tokens[k])
                k += 1
            indices, _ = self._expand(rhs)
            if appending:
                self._assignments[tok.text] = self._assignments.get(tok.text, []) + indices
            else:
                self._assignments[tok.text] = indices
            i = k + 1

    def _detect_dynamic_sql(self, tokens: List[Token]):
        n = len(tokens)
        for i, tok in enumerate(tokens):
            if not tok.is_word("EXEC", "EXECUTE"):
                continue
            j = i + 1
            if j < n and tokens[j].kind == LPAREN:
                end = matching_paren(tokens, j)
                self._add_dynamic(tokens[j + 1 : end], tok)
                continue
            if j + 1 < n and tokens[j].kind == VARIABLE and tokens[j + 1].text == "=":
                j += 2
            k = j
            while k < n and (tokens[k].is_name or tokens[k].kind == DOT):
                k += 1
            if k == j or tokens[k - 1].value != "SP_EXECUTESQL":
                continue
            args: List[Token] = []
            paren = 0
            while k < n:
                if tokens[k].kind == LPAREN:
                    paren += 1
                elif tokens[k].kind == RPAREN:
                    paren -= 1
                elif paren == 0 and tokens[k].kind in (COMMA, SEMI):
                    break
                args.append(tokens[k])
                k += 1
            self._add_dynamic(args, tok)

    def _add_dynamic(self, args: List[Token], call: Token):
        indices, unresolved = self._expand(args)
        payload = " ".join(self.normalized.literal(idx) for idx in indices).strip()
        fragment = StructuralFragment(
            kind=FragmentKind.DYNAMIC_SQL,
            statement_kind=StatementKind.EXEC,
            tokens=[call] + list(args),
            content=self._content([call] + list(args)),
            payload=payload,
        )
        self.structure.dynamic_sql.append(fragment)
        if not payload or unresolved:
            detail = ", ".join(unresolved) if unresolved else "no literal text"
            self.structure.diagnostics.append(
                Diagnostic(
                    ErrorCode.UNRESOLVED_DYNAMIC_SQL,
                    f"Dynamic SQL at offset {call.pos} built at runtime ({detail})",
                    "structure",
                )
            )


def extract_structure(normalized: NormalizedText) -> Structure:
    return StructuralExtractor(normalized).run()
