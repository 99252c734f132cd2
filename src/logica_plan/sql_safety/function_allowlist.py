"""Function allowlist enforcement for untrusted SQL.

Function calls are recognized by shape: an identifier (bare or quoted, with
optional dotted qualifiers) immediately followed by ``(``. Keywords that are
commonly followed by a parenthesis (``IN (...)``, ``OVER (...)`` ...) are not
treated as calls when they appear unqualified.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from logica_plan.access_policy import (
    RAILS_MINIMAL_ALLOWED_FUNCTIONS,
    RAILS_MINIMAL_PLUS_ALLOWED_FUNCTIONS,
    FunctionProfile,
)
from logica_plan.errors import Violation, ViolationReason
from logica_plan.sql_safety.lexer import Token, normalize_identifier_token, tokenize
from logica_plan.sql_safety.query_only import QueryOnlyValidator, normalize_engine, normalize_function_names

logger = logging.getLogger(__name__)

NON_FUNCTION_PAREN_KEYWORDS: frozenset[str] = frozenset({
    "from", "join", "where", "group", "order", "having", "limit", "offset",
    "window", "fetch", "union", "except", "intersect",
    "select", "with", "as", "on",
    "in", "exists", "over", "filter", "within", "values",
    "any", "all",
})


@dataclass(frozen=True)
class FunctionCall:
    """A function call found in SQL.

    Attributes:
        qualified: Dotted, normalized name (``pg_catalog.pg_sleep``)
        unqualified: Last component of the qualified name (``pg_sleep``)
    """

    qualified: str
    unqualified: str


def _qualified_name(tokens: list[Token], idx: int) -> str | None:
    name = tokens[idx].identifier()
    if name is None:
        return None

    parts = [name]
    j = idx - 1
    while j >= 1 and tokens[j].text == ".":
        prefix = tokens[j - 1].identifier()
        if prefix is None:
            break
        parts.insert(0, prefix)
        j -= 2
    return ".".join(parts)


def scan_function_calls(cleaned_sql: str) -> list[FunctionCall]:
    """Distinct function calls (by qualified name) in first-seen order."""
    tokens = tokenize(cleaned_sql, punctuation="().")

    calls: list[FunctionCall] = []
    seen: set[str] = set()
    for idx in range(len(tokens) - 1):
        if tokens[idx + 1].text != "(":
            continue

        qualified = _qualified_name(tokens, idx)
        if qualified is None:
            continue
        if "." not in qualified and qualified in NON_FUNCTION_PAREN_KEYWORDS:
            continue
        if qualified in seen:
            continue

        seen.add(qualified)
        calls.append(FunctionCall(qualified=qualified, unqualified=qualified.split(".")[-1]))
    return calls


def _normalize_allowlist_entry(value: object) -> str | None:
    text = str(value).strip()
    if not text:
        return None

    parts = []
    for part in text.split("."):
        part = part.strip()
        normalized = normalize_identifier_token(part) if part else None
        if normalized is None:
            return None
        parts.append(normalized)
    return ".".join(parts)


def normalize_allowlist(value: Iterable[str] | str) -> frozenset[str]:
    """Normalize allowlist entries; entries that are not identifiers are dropped."""
    if isinstance(value, str):
        value = [value]
    entries = (_normalize_allowlist_entry(v) for v in value if v is not None)
    return frozenset(entry for entry in entries if entry is not None)


def infer_profile(allowlist: frozenset[str]) -> FunctionProfile:
    """Name the canonical profile an allowlist equals, else custom."""
    if allowlist == RAILS_MINIMAL_ALLOWED_FUNCTIONS:
        return FunctionProfile.RAILS_MINIMAL
    if allowlist == RAILS_MINIMAL_PLUS_ALLOWED_FUNCTIONS:
        return FunctionProfile.RAILS_MINIMAL_PLUS
    return FunctionProfile.CUSTOM


class FunctionAllowlistValidator:
    """Checks function calls against a forbidden list and an allowlist.

    Example:
        >>> FunctionAllowlistValidator.validate(
        ...     "SELECT count(*) FROM t", engine="sqlite", allowed_functions={"count"}
        ... )
        {'count'}
    """

    @staticmethod
    def validate(
        sql: str,
        *,
        engine: str | None,
        allowed_functions: Iterable[str] | None,
        forbidden_functions: Iterable[str] | None = None,
    ) -> set[str]:
        """Validate the function calls in SQL.

        Args:
            sql: SQL text
            engine: Engine name; sqlite disables E'...' escape handling
            allowed_functions: Allowed names, qualified or not; None means unrestricted
            forbidden_functions: Names that are always rejected

        Returns:
            Distinct unqualified names of every function called.

        Raises:
            Violation: forbidden_function or function_not_allowed.
        """
        engine = normalize_engine(engine)
        allowlist = None if allowed_functions is None else normalize_allowlist(allowed_functions)

        cleaned = QueryOnlyValidator.strip_comments_and_strings(str(sql or ""), engine)
        calls = scan_function_calls(cleaned)
        used = {call.unqualified for call in calls}

        if forbidden_functions is not None:
            forbidden = normalize_function_names(forbidden_functions)
            hit = next((call for call in calls if call.unqualified in forbidden), None)
            if hit is not None:
                logger.warning("Rejected forbidden function %s (engine=%s)", hit.unqualified, engine)
                raise Violation(
                    ViolationReason.FORBIDDEN_FUNCTION,
                    f"Disallowed SQL function: {hit.unqualified}",
                    details=hit.unqualified,
                )

        if allowlist is None:
            return used

        for call in calls:
            if call.unqualified in allowlist or call.qualified in allowlist:
                continue

            logger.warning("Rejected function %s (engine=%s)", call.unqualified, engine)
            raise Violation(
                ViolationReason.FUNCTION_NOT_ALLOWED,
                f"SQL function is not allowed: {call.unqualified}",
                details={
                    "function": call.unqualified,
                    "allowed": sorted(allowlist),
                    "profile": infer_profile(allowlist).value,
                },
            )

        return used

    @staticmethod
    def scan_functions(sql: str, engine: str | None = None) -> list[str]:
        """Distinct unqualified function names in first-seen order."""
        cleaned = QueryOnlyValidator.strip_comments_and_strings(str(sql or ""), engine)
        result: list[str] = []
        for call in scan_function_calls(cleaned):
            if call.unqualified not in result:
                result.append(call.unqualified)
        return result
