"""SQL safety validators.

This package provides lexical validators for SQL compiled from untrusted input:
- QueryOnlyValidator: single read-only statement, no dangerous keywords
- FunctionAllowlistValidator: forbidden functions and function allowlists
- RelationAccessValidator: denied schemas and relation/schema allowlists

Example:
    >>> from logica_plan.sql_safety import (
    ...     FunctionAllowlistValidator,
    ...     RelationAccessValidator,
    ... )
    >>>
    >>> sql = "SELECT count(*) FROM orders"
    >>> FunctionAllowlistValidator.validate(sql, engine="sqlite", allowed_functions={"count"})
    {'count'}
    >>> RelationAccessValidator.validate(sql, engine="sqlite", allowed_relations=["orders"])
    ['main.orders']
"""

from __future__ import annotations

from logica_plan.sql_safety.function_allowlist import (
    NON_FUNCTION_PAREN_KEYWORDS,
    FunctionAllowlistValidator,
    FunctionCall,
    scan_function_calls,
)
from logica_plan.sql_safety.lexer import Token, TokenKind, tokenize
from logica_plan.sql_safety.query_only import (
    PSQL_FORBIDDEN_FUNCTIONS,
    SQLITE_FORBIDDEN_FUNCTIONS,
    QueryOnlyValidator,
    forbidden_functions_for_engine,
    forbidden_keywords_for_engine,
    normalize_engine,
)
from logica_plan.sql_safety.relation_access import (
    CLAUSE_END_KEYWORDS,
    RelationAccessValidator,
    RelationRef,
)

__all__ = [
    # Validators
    "QueryOnlyValidator",
    "FunctionAllowlistValidator",
    "RelationAccessValidator",
    # Lexing
    "Token",
    "TokenKind",
    "tokenize",
    "FunctionCall",
    "RelationRef",
    "scan_function_calls",
    # Constants
    "NON_FUNCTION_PAREN_KEYWORDS",
    "CLAUSE_END_KEYWORDS",
    "SQLITE_FORBIDDEN_FUNCTIONS",
    "PSQL_FORBIDDEN_FUNCTIONS",
    "forbidden_functions_for_engine",
    "forbidden_keywords_for_engine",
    "normalize_engine",
]
