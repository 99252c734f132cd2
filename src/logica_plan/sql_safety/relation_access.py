"""Relation access enforcement for untrusted SQL.

RelationAccessValidator finds every relation read through ``FROM``, ``JOIN``
and comma-separated FROM lists and checks it against denied schemas and the
allowed relation/schema lists of an access policy.

Recognition is purely lexical:
- relation positions are tracked per parenthesis depth and cleared by clause
  terminators (WHERE, GROUP, ...) or the closing parenthesis
- join noise words (LATERAL, ONLY, AS, INNER, LEFT, ...) are skipped
- derived tables ``(subquery)`` and table-valued functions ``f(...)`` are skipped
- names declared by a leading ``WITH [RECURSIVE]`` are skipped when referenced
  unqualified

Example:
    >>> RelationAccessValidator.validate(
    ...     "SELECT * FROM public.orders o JOIN customers c ON o.cid = c.id",
    ...     engine="psql",
    ...     allowed_schemas=["public"],
    ... )
    ['public.customers', 'public.orders']
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from logica_plan.access_policy import default_denied_schemas, normalize_identifier_list
from logica_plan.errors import Violation, ViolationReason
from logica_plan.sql_safety.lexer import Token, tokenize
from logica_plan.sql_safety.query_only import QueryOnlyValidator, normalize_engine

logger = logging.getLogger(__name__)

CLAUSE_END_KEYWORDS: frozenset[str] = frozenset({
    "WHERE", "GROUP", "ORDER", "HAVING", "LIMIT", "OFFSET", "WINDOW", "FETCH",
    "UNION", "EXCEPT", "INTERSECT",
})

JOIN_NOISE_KEYWORDS: frozenset[str] = frozenset({
    "LATERAL", "ONLY", "AS", "INNER", "LEFT", "RIGHT", "FULL", "CROSS", "OUTER", "NATURAL",
})


def default_schema_for_engine(engine: str | None) -> str:
    return "public" if engine == "psql" else "main"


# =============================================================================
# Token helpers
# =============================================================================


def _parse_identifier(tokens: list[Token], idx: int) -> tuple[str | None, int]:
    if idx >= len(tokens):
        return None, idx
    name = tokens[idx].identifier()
    if name is None:
        return None, idx
    return name, idx + 1


def _skip_parenthesized(tokens: list[Token], idx: int) -> int:
    if tokens[idx].text != "(":
        return idx

    depth = 0
    while idx < len(tokens):
        text = tokens[idx].text
        if text == "(":
            depth += 1
        elif text == ")":
            depth -= 1
        idx += 1
        if depth == 0:
            break
    return idx


def _skip_join_noise(tokens: list[Token], idx: int) -> int:
    while idx < len(tokens) and tokens[idx].keyword() in JOIN_NOISE_KEYWORDS:
        idx += 1
    return idx


def extract_cte_names(tokens: list[Token]) -> set[str]:
    """Names declared by a leading WITH [RECURSIVE] clause."""
    names: set[str] = set()
    if not tokens or tokens[0].keyword() != "WITH":
        return names

    idx = 1
    if idx < len(tokens) and tokens[idx].keyword() == "RECURSIVE":
        idx += 1

    while True:
        name, idx = _parse_identifier(tokens, idx)
        if name is None:
            break
        names.add(name)

        if idx < len(tokens) and tokens[idx].text == "(":
            idx = _skip_parenthesized(tokens, idx)
        if idx < len(tokens) and tokens[idx].keyword() == "AS":
            idx += 1
        if idx < len(tokens) and tokens[idx].text == "(":
            idx = _skip_parenthesized(tokens, idx)

        if not (idx < len(tokens) and tokens[idx].text == ","):
            break
        idx += 1

    return names


# =============================================================================
# Relation walk
# =============================================================================


@dataclass
class RelationRef:
    """A relation reference found at a FROM/JOIN position.

    Attributes:
        schema: Schema as written (None when unqualified)
        table: Table name
        effective_schema: Schema the reference resolves to
    """

    schema: str | None
    table: str
    effective_schema: str

    @property
    def qualified(self) -> str:
        return f"{self.effective_schema}.{self.table}"

    @property
    def as_written(self) -> str:
        return f"{self.schema}.{self.table}" if self.schema is not None else self.table


@dataclass
class _RelationWalk:
    tokens: list[Token]
    default_schema: str
    strict: bool
    cte_names: set[str] = field(init=False)

    def __post_init__(self) -> None:
        self.cte_names = extract_cte_names(self.tokens)

    def references(self) -> Iterator[RelationRef]:
        tokens = self.tokens
        paren_depth = 0
        in_from_at_depth: dict[int, bool] = {}

        idx = 0
        while idx < len(tokens):
            tok = tokens[idx]

            if tok.text == "(":
                paren_depth += 1
                idx += 1
                continue
            if tok.text == ")":
                in_from_at_depth.pop(paren_depth, None)
                if paren_depth > 0:
                    paren_depth -= 1
                idx += 1
                continue

            keyword = tok.keyword()
            at_list_comma = tok.text == "," and in_from_at_depth.get(paren_depth, False)
            if keyword in ("FROM", "JOIN") or at_list_comma:
                in_from_at_depth[paren_depth] = True
                ref, idx = self._parse_relation(idx + 1)
                if ref is not None:
                    yield ref
                continue

            if in_from_at_depth.get(paren_depth) and keyword in CLAUSE_END_KEYWORDS:
                in_from_at_depth[paren_depth] = False
            idx += 1

    def _parse_relation(self, idx: int) -> tuple[RelationRef | None, int]:
        tokens = self.tokens
        idx = _skip_join_noise(tokens, idx)
        if idx >= len(tokens) or tokens[idx].text == "(":
            return None, idx

        name1, idx = _parse_identifier(tokens, idx)
        if name1 is None:
            return None, idx
        if idx < len(tokens) and tokens[idx].text == "(":
            return None, idx

        schema = None
        table = name1
        if idx < len(tokens) and tokens[idx].text == ".":
            name2, next_idx = _parse_identifier(tokens, idx + 1)
            if name2 is None:
                if self.strict:
                    raise Violation(
                        ViolationReason.INVALID_RELATION,
                        "Invalid SQL relation reference after '.'",
                    )
                return None, next_idx
            schema, table, idx = name1, name2, next_idx

        if schema is None and table in self.cte_names:
            return None, idx

        return RelationRef(schema, table, schema if schema is not None else self.default_schema), idx


def _tokens_for(sql: str, engine: str | None) -> list[Token]:
    cleaned = QueryOnlyValidator.strip_comments_and_strings(str(sql or ""), engine)
    return tokenize(cleaned, punctuation="(),.")


# =============================================================================
# Validator
# =============================================================================


class RelationAccessValidator:
    """Checks relation references against denied and allowed lists."""

    @classmethod
    def validate(
        cls,
        sql: str,
        *,
        engine: str | None,
        allowed_relations: Iterable[str] | None = None,
        allowed_schemas: Iterable[str] | None = None,
        denied_schemas: Iterable[str] | None = None,
    ) -> list[str]:
        """Validate every relation referenced by SQL.

        Args:
            sql: SQL text
            engine: "sqlite" or "psql"; decides the default schema
            allowed_relations: "schema.table" or bare "table" entries; takes
                precedence over allowed_schemas. None means unrestricted.
            allowed_schemas: Schemas that may be read. None means unrestricted.
            denied_schemas: Schemas or table names never readable; None uses
                the engine defaults.

        Returns:
            Sorted "schema.table" names of the relations seen before any rejection.

        Raises:
            Violation: invalid_relation, relation_not_allowed, denied_schema or
                schema_not_allowed.
        """
        engine = normalize_engine(engine)
        denied = normalize_identifier_list(denied_schemas)
        if denied is None:
            denied = default_denied_schemas(engine)
        denied_set = set(denied)
        allowed_relations_norm = normalize_identifier_list(allowed_relations)
        allowed_schemas_norm = normalize_identifier_list(allowed_schemas)

        walk = _RelationWalk(_tokens_for(sql, engine), default_schema_for_engine(engine), strict=True)
        relations_used: set[str] = set()

        for ref in walk.references():
            if engine == "psql" and ref.schema is None and ref.table.startswith("pg_"):
                logger.warning("Rejected unqualified pg_* relation %s", ref.table)
                raise Violation(
                    ViolationReason.RELATION_NOT_ALLOWED,
                    f"SQL relation access is not allowed: {ref.table}. "
                    "PostgreSQL always searches pg_catalog via search_path, so an unqualified "
                    "pg_* name may resolve to a system catalog relation "
                    f"(e.g. pg_catalog.{ref.table}). "
                    f"Fix: use an explicit schema-qualified relation (e.g. public.{ref.table}) "
                    "and allow it explicitly, or rename the table.",
                )

            relations_used.add(ref.qualified)

            if ref.effective_schema in denied_set or ref.table in denied_set:
                logger.warning("Rejected denied relation %s", ref.as_written)
                raise Violation(
                    ViolationReason.DENIED_SCHEMA,
                    f"Disallowed schema/table referenced in SQL: {ref.as_written}",
                )

            cls._validate_allowed(ref, allowed_relations_norm, allowed_schemas_norm)

        return sorted(relations_used)

    @staticmethod
    def scan_relations(sql: str, engine: str | None) -> list[str]:
        """Sorted "schema.table" names referenced by SQL, without enforcement."""
        engine = normalize_engine(engine)
        walk = _RelationWalk(_tokens_for(sql, engine), default_schema_for_engine(engine), strict=False)
        return sorted({ref.qualified for ref in walk.references()})

    @staticmethod
    def _validate_allowed(
        ref: RelationRef,
        allowed_relations: tuple[str, ...] | None,
        allowed_schemas: tuple[str, ...] | None,
    ) -> None:
        if allowed_relations is None and allowed_schemas is None:
            return

        if allowed_relations is not None:
            if not allowed_relations:
                raise Violation(
                    ViolationReason.RELATION_NOT_ALLOWED,
                    f"SQL relation access is not allowed: {ref.as_written}",
                )
            if ref.qualified in allowed_relations:
                return
            if ref.schema is None and ref.table in allowed_relations:
                return
            raise Violation(
                ViolationReason.RELATION_NOT_ALLOWED,
                f"SQL relation access is not allowed: {ref.qualified}",
            )

        if allowed_schemas and ref.effective_schema in allowed_schemas:
            return
        raise Violation(
            ViolationReason.SCHEMA_NOT_ALLOWED,
            f"SQL schema access is not allowed: {ref.effective_schema}",
        )
