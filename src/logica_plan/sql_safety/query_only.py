"""Query-only validation for SQL that must not modify the database.

QueryOnlyValidator accepts a single SELECT/WITH/VALUES statement (optionally
EXPLAIN) and rejects statement-level side effects: data modification and DDL
keywords, engine-specific dangerous keywords, dangerous built-in functions and
PostgreSQL's SELECT INTO.

It also owns the comment/literal stripping primitives that every other SQL
safety validator runs before lexing.

Example:
    >>> from logica_plan.sql_safety import QueryOnlyValidator
    >>>
    >>> QueryOnlyValidator.validate("SELECT 1", engine="sqlite")
    >>> QueryOnlyValidator.validate("DROP TABLE users", engine="sqlite")
    Traceback (most recent call last):
    ...
    logica_plan.errors.Violation: Only SELECT/WITH/VALUES queries are allowed
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from logica_plan.errors import Violation, ViolationReason
from logica_plan.sql_safety.lexer import tokenize

# =============================================================================
# Keyword and function sets
# =============================================================================

BASE_FORBIDDEN_KEYWORDS: frozenset[str] = frozenset({
    "INSERT", "UPDATE", "DELETE", "MERGE", "CREATE", "DROP", "ALTER",
    "TRUNCATE", "GRANT", "REVOKE",
    "BEGIN", "COMMIT", "ROLLBACK", "SET", "RESET",
    "VACUUM", "ANALYZE", "REINDEX",
})
SQLITE_FORBIDDEN_KEYWORDS: frozenset[str] = frozenset({"ATTACH", "DETACH", "PRAGMA"})
PSQL_FORBIDDEN_KEYWORDS: frozenset[str] = frozenset({"COPY", "DO", "CALL"})

SQLITE_FORBIDDEN_FUNCTIONS: frozenset[str] = frozenset({"load_extension", "readfile", "writefile"})
PSQL_FORBIDDEN_FUNCTIONS: frozenset[str] = frozenset({
    "pg_read_file", "pg_read_binary_file", "pg_ls_dir", "pg_stat_file",
    "lo_import", "lo_export",
    "pg_sleep", "pg_sleep_for", "pg_sleep_until",
    "pg_cancel_backend", "pg_terminate_backend", "pg_reload_conf",
    "dblink", "dblink_connect", "dblink_connect_u",
    "set_config",
})

QUERY_START_KEYWORDS: tuple[str, ...] = ("SELECT", "WITH", "VALUES")

_WORD = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def normalize_engine(engine: str | None) -> str | None:
    """Trim and lower-case an engine name; blank means unknown."""
    value = str(engine or "").strip().lower()
    return value or None


def forbidden_keywords_for_engine(engine: str | None) -> frozenset[str]:
    """Keywords rejected for an engine (both dialects' for unknown engines)."""
    if engine == "sqlite":
        return BASE_FORBIDDEN_KEYWORDS | SQLITE_FORBIDDEN_KEYWORDS
    if engine == "psql":
        return BASE_FORBIDDEN_KEYWORDS | PSQL_FORBIDDEN_KEYWORDS
    return BASE_FORBIDDEN_KEYWORDS | SQLITE_FORBIDDEN_KEYWORDS | PSQL_FORBIDDEN_KEYWORDS


def forbidden_functions_for_engine(engine: str | None) -> frozenset[str]:
    """Functions rejected for an engine (both dialects' for unknown engines)."""
    if engine == "sqlite":
        return SQLITE_FORBIDDEN_FUNCTIONS
    if engine == "psql":
        return PSQL_FORBIDDEN_FUNCTIONS
    return SQLITE_FORBIDDEN_FUNCTIONS | PSQL_FORBIDDEN_FUNCTIONS


def normalize_function_names(value: Iterable[str] | str | None) -> frozenset[str]:
    """Trim and lower-case function names, dropping blanks."""
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = [value]
    names = (str(v).strip().lower() for v in value if v is not None)
    return frozenset(name for name in names if name)


# =============================================================================
# Stripping
# =============================================================================

_QUOTE_CLOSERS = {'"': '"', "`": "`", "[": "]"}


def _is_tag_char(ch: str) -> bool:
    return ch == "_" or ("0" <= ch <= "9") or ("A" <= ch <= "Z") or ("a" <= ch <= "z")


def _is_identifier_char(ch: str) -> bool:
    return ch in "_$" or ch.isalnum()


def _opens_escape_string(sql: str, quote_idx: int) -> bool:
    # E'...' prefix, not the tail of a longer identifier such as `name'`
    if quote_idx < 1 or sql[quote_idx - 1] not in "eE":
        return False
    return quote_idx < 2 or not _is_identifier_char(sql[quote_idx - 2])


def _blank(chars: list[str], start: int, end: int, keep_newlines: bool = True) -> None:
    for idx in range(start, min(end, len(chars))):
        if not (keep_newlines and chars[idx] == "\n"):
            chars[idx] = " "


def _strip(sql: str, blank_identifiers: bool, backslash_escapes: bool = True) -> str:
    chars = list(sql)
    n = len(chars)
    i = 0

    while i < n:
        ch = chars[i]
        nxt = chars[i + 1] if i + 1 < n else ""

        if ch in _QUOTE_CLOSERS:
            close = _QUOTE_CLOSERS[ch]
            start = i
            i += 1
            while i < n:
                if chars[i] == close:
                    if i + 1 < n and chars[i + 1] == close:
                        i += 2
                        continue
                    i += 1
                    break
                i += 1
            if blank_identifiers:
                chars[start] = " "
                _blank(chars, start + 1, i)
            continue

        if ch == "-" and nxt == "-":
            start = i
            while i < n and chars[i] != "\n":
                i += 1
            _blank(chars, start, i)
            continue

        if ch == "/" and nxt == "*":
            depth = 1
            chars[i] = chars[i + 1] = " "
            i += 2
            while i < n and depth > 0:
                pair = "".join(chars[i:i + 2])
                if pair == "/*":
                    depth += 1
                    chars[i] = chars[i + 1] = " "
                    i += 2
                    continue
                if pair == "*/":
                    depth -= 1
                    chars[i] = chars[i + 1] = " "
                    i += 2
                    continue
                if chars[i] != "\n":
                    chars[i] = " "
                i += 1
            continue

        if ch == "'":
            escapes = backslash_escapes and _opens_escape_string(sql, i)
            chars[i] = " "
            i += 1
            while i < n:
                if escapes and chars[i] == "\\" and i + 1 < n:
                    _blank(chars, i, i + 2)
                    i += 2
                    continue
                if chars[i] == "'":
                    if i + 1 < n and chars[i + 1] == "'":
                        chars[i] = chars[i + 1] = " "
                        i += 2
                        continue
                    chars[i] = " "
                    i += 1
                    break
                if chars[i] != "\n":
                    chars[i] = " "
                i += 1
            continue

        # a dollar quote cannot start inside an identifier (a$b$) or as a $1 parameter
        if ch == "$" and not (i > 0 and _is_identifier_char(sql[i - 1])) and not nxt.isdigit():
            tag_end = i + 1
            while tag_end < n and chars[tag_end] != "$" and _is_tag_char(chars[tag_end]):
                tag_end += 1

            if tag_end < n and chars[tag_end] == "$":
                delimiter = "".join(chars[i:tag_end + 1])
                _blank(chars, i, tag_end + 1, keep_newlines=False)
                body_start = tag_end + 1
                close_idx = "".join(chars).find(delimiter, body_start)
                if close_idx >= 0:
                    _blank(chars, body_start, close_idx)
                    _blank(chars, close_idx, close_idx + len(delimiter), keep_newlines=False)
                    i = close_idx + len(delimiter)
                    continue
                _blank(chars, body_start, n)
                break

        i += 1

    return "".join(chars)


# =============================================================================
# Validator
# =============================================================================


class QueryOnlyValidator:
    """Validates that SQL is a single read-only query."""

    @staticmethod
    def strip_comments_and_strings(sql: str, engine: str | None = None) -> str:
        """Blank out comments, string literals and dollar-quoted bodies.

        Quoted identifiers are left intact so that the lexers can still see
        them. Newlines are preserved and the result has the input's length.
        Backslash escapes inside E'...' strings are honored unless the engine
        is sqlite, which has no escape-string syntax.
        """
        return _strip(
            str(sql or ""),
            blank_identifiers=False,
            backslash_escapes=normalize_engine(engine) != "sqlite",
        )

    @staticmethod
    def strip_comments_and_literals(sql: str, engine: str | None = None) -> str:
        """Like strip_comments_and_strings but also blanks quoted identifiers."""
        return _strip(
            str(sql or ""),
            blank_identifiers=True,
            backslash_escapes=normalize_engine(engine) != "sqlite",
        )

    @staticmethod
    def validate_semicolons(cleaned: str) -> None:
        """Reject more than one statement; a single trailing ';' is allowed."""
        trimmed = cleaned.rstrip()
        if trimmed.endswith(";"):
            trimmed = trimmed[:-1].rstrip()
        if ";" in trimmed:
            raise Violation(
                ViolationReason.MULTIPLE_STATEMENTS,
                "Multiple SQL statements are not allowed",
            )

    @classmethod
    def validate(
        cls,
        sql: str,
        *,
        engine: str | None = None,
        allow_explain: bool = False,
        forbidden_functions: Iterable[str] | None = None,
    ) -> None:
        """Validate that SQL is a single query without side effects.

        Args:
            sql: SQL text
            engine: "sqlite", "psql" or None (apply both dialects' rules)
            allow_explain: Accept EXPLAIN as the leading keyword
            forbidden_functions: Functions to reject; None uses the engine defaults

        Raises:
            Violation: With reason multiple_statements, empty_sql, not_a_query,
                forbidden_keyword, forbidden_function or select_into.
        """
        sql = str(sql or "")
        engine = normalize_engine(engine)

        cleaned = cls.strip_comments_and_literals(sql, engine)
        cls.validate_semicolons(cleaned)

        words = [w.upper() for w in _WORD.findall(cleaned)]
        if not words:
            raise Violation(ViolationReason.EMPTY_SQL, "SQL must be a non-empty query")

        allowed_first = QUERY_START_KEYWORDS + (("EXPLAIN",) if allow_explain else ())
        if words[0] not in allowed_first:
            raise Violation(ViolationReason.NOT_A_QUERY, "Only SELECT/WITH/VALUES queries are allowed")

        forbidden = forbidden_keywords_for_engine(engine)
        hit = next((w for w in words if w in forbidden), None)
        if hit is not None:
            raise Violation(ViolationReason.FORBIDDEN_KEYWORD, f"Disallowed SQL keyword: {hit}")

        if forbidden_functions is None:
            forbidden_set = forbidden_functions_for_engine(engine)
        else:
            forbidden_set = normalize_function_names(forbidden_functions)

        hit_function = cls._first_forbidden_call(cls.strip_comments_and_strings(sql, engine), forbidden_set)
        if hit_function is not None:
            raise Violation(
                ViolationReason.FORBIDDEN_FUNCTION,
                f"Disallowed SQL function: {hit_function}",
                details=hit_function,
            )

        if engine in (None, "psql") and "INTO" in words:
            raise Violation(ViolationReason.SELECT_INTO, "PostgreSQL SELECT INTO is not allowed")

    @staticmethod
    def _first_forbidden_call(cleaned: str, forbidden: frozenset[str]) -> str | None:
        if not forbidden:
            return None

        tokens = tokenize(cleaned, punctuation="().")
        for idx, tok in enumerate(tokens[:-1]):
            if tokens[idx + 1].text != "(":
                continue
            name = tok.identifier()
            if name is not None and name in forbidden:
                return name
        return None
