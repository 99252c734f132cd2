"""Minimal SQL lexer shared by the safety validators.

The lexer only recognizes what the validators need: quoted identifiers in
their three dialect forms, bare identifiers/keywords and a configurable set of
single-character punctuation marks. Every other character is skipped, so the
input should already have had comments and string literals neutralized (see
``QueryOnlyValidator.strip_comments_and_strings``).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class TokenKind(str, Enum):
    IDENTIFIER = "identifier"
    PUNCT = "punct"


@dataclass(frozen=True)
class Token:
    """A lexed SQL token.

    Attributes:
        kind: Identifier or punctuation
        text: Raw token text, including quote characters for quoted identifiers
        quoted: True for ``"x"``, ``[x]`` and backtick-quoted identifiers
    """

    kind: TokenKind
    text: str
    quoted: bool = False

    @property
    def is_bare(self) -> bool:
        return self.kind == TokenKind.IDENTIFIER and not self.quoted

    def keyword(self) -> str:
        """Upper-cased text for bare identifiers, empty string otherwise."""
        return self.text.upper() if self.is_bare else ""

    def identifier(self) -> str | None:
        """Normalized (unquoted, trimmed, lower-cased) identifier text."""
        return normalize_identifier_token(self.text)


_QUOTED_PATTERN = (
    r'"(?:[^"]|"")*"'
    r"|`(?:[^`]|``)*`"
    r"|\[(?:[^\]]|\]\])*\]"
)
_BARE_PATTERN = r"[A-Za-z_][A-Za-z0-9_$]*"

BARE_IDENTIFIER = re.compile(rf"\A{_BARE_PATTERN}\Z")

_PATTERN_CACHE: dict[str, re.Pattern[str]] = {}


def _token_pattern(punctuation: str) -> re.Pattern[str]:
    pattern = _PATTERN_CACHE.get(punctuation)
    if pattern is None:
        pattern = re.compile(
            rf"(?P<quoted>{_QUOTED_PATTERN})"
            rf"|(?P<bare>{_BARE_PATTERN})"
            rf"|(?P<punct>[{re.escape(punctuation)}])"
        )
        _PATTERN_CACHE[punctuation] = pattern
    return pattern


def tokenize(cleaned_sql: str, punctuation: str = "().") -> list[Token]:
    """Split cleaned SQL into identifier and punctuation tokens.

    Args:
        cleaned_sql: SQL with comments and string literals blanked out
        punctuation: Single characters to emit as punctuation tokens

    Returns:
        Tokens in source order.
    """
    tokens: list[Token] = []
    for match in _token_pattern(punctuation).finditer(cleaned_sql):
        if match.lastgroup == "quoted":
            tokens.append(Token(TokenKind.IDENTIFIER, match.group(), quoted=True))
        elif match.lastgroup == "bare":
            tokens.append(Token(TokenKind.IDENTIFIER, match.group()))
        else:
            tokens.append(Token(TokenKind.PUNCT, match.group()))
    return tokens


def _unquote(text: str, close: str) -> str:
    return text[1:-1].replace(close * 2, close).strip().lower()


def normalize_identifier_token(text: str | None) -> str | None:
    """Normalize a single identifier token.

    Quoted forms are unquoted (collapsing doubled closing quotes), trimmed and
    lower-cased; bare identifiers are lower-cased. Anything else is None.
    """
    if not text:
        return None

    if len(text) >= 2:
        if text[0] == '"' and text[-1] == '"':
            return _unquote(text, '"')
        if text[0] == "`" and text[-1] == "`":
            return _unquote(text, "`")
        if text[0] == "[" and text[-1] == "]":
            return _unquote(text, "]")

    if not BARE_IDENTIFIER.match(text):
        return None
    return text.lower()
