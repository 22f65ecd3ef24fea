import logging
from dataclasses import dataclass, field
from typing import List

from .models import Diagnostic, ErrorCode

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_MAX_BYTES = 1024 * 1024
LITERAL_PLACEHOLDER = "?"


@dataclass
class NormalizedText:
    text: str
    literals: List[str] = field(default_factory=list)
    truncated: bool = False
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def literal(self, index: int) -> str:
        if 0 <= index < len(self.literals):
            return self.literals[index]
        return ""


def _blank(chunk: str) -> str:
    """Replace a comment body with spaces, keeping line breaks."""
    return "".join(ch if ch in "\r\n" else " " for ch in chunk)


def _truncate(raw_text: str, max_bytes: int):
    encoded = raw_text.encode("utf-8")
    if max_bytes <= 0 or len(encoded) <= max_bytes:
        return raw_text, False
    return encoded[:max_bytes].decode("utf-8", errors="ignore"), True


def _scan(text: str, diagnostics: List[Diagnostic]):
    out: List[str] = []
    literals: List[str] = []
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < n else ""

        if ch == "-" and nxt == "-":
            end = text.find("\n", i)
            if end == -1:
                end = n
            out.append(_blank(text[i:end]))
            i = end
            continue

        if ch == "/" and nxt == "*":
            end = text.find("*/", i + 2)
            if end == -1:
                diagnostics.append(
                    Diagnostic(ErrorCode.NORMALIZER_FALLBACK, "Unterminated block comment", "normalize")
                )
                out.append(_blank(text[i:]))
                break
            out.append(_blank(text[i : end + 2]))
            i = end + 2
            continue

        if ch == "[":
            end = i + 1
            while end < n:
                if text[end] == "]":
                    if end + 1 < n and text[end + 1] == "]":
                        end += 2
                        continue
                    break
                end += 1
            out.append(text[i : end + 1])
            i = end + 1
            continue

        if ch in ("'", '"'):
            quote = ch
            payload: List[str] = []
            j = i + 1
            closed = False
            while j < n:
                c = text[j]
                if c == "\\" and j + 1 < n and text[j + 1] in (quote, "\\"):
                    payload.append(text[j + 1])
                    j += 2
                    continue
                if c == quote:
                    if j + 1 < n and text[j + 1] == quote:
                        payload.append(quote)
                        j += 2
                        continue
                    closed = True
                    break
                payload.append(c)
                j += 1

            literals.append("".join(payload))
            if closed:
                out.append(f"{quote}{LITERAL_PLACEHOLDER}{quote}")
                i = j + 1
            else:
                diagnostics.append(
                    Diagnostic(ErrorCode.NORMALIZER_FALLBACK, "Unterminated string literal", "normalize")
                )
                out.append(f"{quote}{LITERAL_PLACEHOLDER}{quote}")
                break
            continue

        out.append(ch)
        i += 1

    return "".join(out), literals


def normalize(raw_text: str, max_bytes: int = DEFAULT_MAX_BYTES) -> NormalizedText:
    """Strip comments and literal payloads from a definition and upper-case it.

    Comment bodies become whitespace so offsets and line breaks survive. Literal
    delimiters are kept and their content is replaced by a fixed placeholder; the
    original payloads are returned in order of appearance. Never raises.
    """
    if not raw_text:
        return NormalizedText(text="")

    diagnostics: List[Diagnostic] = []
    text, truncated = _truncate(raw_text, max_bytes)
    if truncated:
        logger.warning(f"Definition truncated from {len(raw_text.encode('utf-8'))} to {max_bytes} bytes")
        diagnostics.append(
            Diagnostic(ErrorCode.TRUNCATED, f"Definition truncated to {max_bytes} bytes", "normalize")
        )

    try:
        cleaned, literals = _scan(text, diagnostics)
    except Exception as e:
        logger.warning(f"Normalization failed, falling back to plain upper-case: {e}")
        diagnostics.append(Diagnostic(ErrorCode.NORMALIZER_FALLBACK, str(e), "normalize"))
        return NormalizedText(text=text.upper(), truncated=truncated, diagnostics=diagnostics)

    return NormalizedText(
        text=cleaned.upper(),
        literals=literals,
        truncated=truncated,
        diagnostics=diagnostics,
    )
