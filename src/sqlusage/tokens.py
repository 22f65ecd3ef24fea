import re
from dataclasses import dataclass
from typing import List, Sequence

WORD = "WORD"
QUOTED = "QUOTED"
STRING = "STRING"
NUMBER = "NUMBER"
VARIABLE = "VARIABLE"
DOT = "DOT"
COMMA = "COMMA"
LPAREN = "LPAREN"
RPAREN = "RPAREN"
SEMI = "SEMI"
OP = "OP"

_TOKEN_RE = re.compile(
    r"""
      (?P<STRING>N?'[^']*'|N?"[^"]*")
    | (?P<QUOTED>\[(?:[^\]]|\]\])*\]?)
    | (?P<VARIABLE>@@?[\w#$]*)
    | (?P<NUMBER>\d+(?:\.\d+)?)
    | (?P<WORD>[\w#$]+)
    | (?P<DOT>\.)
    | (?P<COMMA>,)
    | (?P<LPAREN>\()
    | (?P<RPAREN>\))
    | (?P<SEMI>;)
    | (?P<OP>[^\s\w])
    """,
    re.VERBOSE,
)

NAME_KINDS = (WORD, QUOTED)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int
    literal_index: int = -1

    @property
    def value(self) -> str:
        if self.kind == QUOTED:
            return self.text.strip("[]").replace("]]", "]")
        return self.text

    @property
    def is_name(self) -> bool:
        return self.kind in NAME_KINDS

    @property
    def is_temporary(self) -> bool:
        return self.kind == VARIABLE or self.value.startswith("#")

    def is_word(self, *words: str) -> bool:
        return self.kind == WORD and self.text in words


def tokenize(text: str) -> List[Token]:
    """Split normalized (upper-case, literal-free) SQL into typed tokens."""
    tokens: List[Token] = []
    literal_index = 0
    for match in _TOKEN_RE.finditer(text):
        kind = match.lastgroup
        if kind == STRING:
            tokens.append(Token(kind, match.group(), match.start(), literal_index))
            literal_index += 1
        else:
            tokens.append(Token(kind, match.group(), match.start()))
    return tokens


def name_parts(tokens: Sequence[Token]) -> List[str]:
    """Render tokens as lookup parts: names by value, dots as '.'."""
    return ["." if t.kind == DOT else t.value for t in tokens]


def matching_paren(tokens: Sequence[Token], start: int) -> int:
    """Index of the RPAREN closing ``tokens[start]``, or the last index if unbalanced."""
    depth = 0
    for i in range(start, len(tokens)):
        kind = tokens[i].kind
        if kind == LPAREN:
            depth += 1
        elif kind == RPAREN:
            depth -= 1
            if depth == 0:
                return i
    return len(tokens) - 1
