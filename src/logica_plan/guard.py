"""Policy gate for SQL compiled from untrusted input.

SqlGuard runs the SQL safety validators in a fixed order using one
AccessPolicy:

1. QueryOnlyValidator (optional): one read-only statement
2. FunctionAllowlistValidator: the engine's forbidden functions, then the
   policy's resolved function allowlist
3. RelationAccessValidator: denied schemas, then allowed relations/schemas

Trusted policies are never enforced; their SQL is only scanned so that the
report still lists the functions and relations it uses.

Example:
    >>> guard = SqlGuard(AccessPolicy.untrusted(engine="sqlite", allowed_relations=["orders"]))
    >>> report = guard.check("SELECT count(*) FROM orders")
    >>> report.functions_used, report.relations_used
    (('count',), ('main.orders',))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from logica_plan.access_policy import AccessPolicy
from logica_plan.errors import Violation
from logica_plan.sql_safety.function_allowlist import FunctionAllowlistValidator
from logica_plan.sql_safety.query_only import (
    QueryOnlyValidator,
    forbidden_functions_for_engine,
    normalize_engine,
)
from logica_plan.sql_safety.relation_access import RelationAccessValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardReport:
    """Outcome of a guard check that passed.

    Attributes:
        sql: The checked SQL
        engine: Engine the SQL was checked for
        functions_used: Sorted distinct unqualified function names
        relations_used: Sorted "schema.table" names
        enforced: False when the policy was trusted and the SQL was only scanned
    """

    sql: str
    engine: str | None
    functions_used: tuple[str, ...]
    relations_used: tuple[str, ...]
    enforced: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "engine": self.engine,
            "functions_used": list(self.functions_used),
            "relations_used": list(self.relations_used),
            "enforced": self.enforced,
        }


class SqlGuard:
    """Checks SQL against an access policy.

    Args:
        policy: Policy to enforce; defaults to an untrusted policy that allows
            no relations at all
        query_only: Run QueryOnlyValidator before the policy checks
    """

    def __init__(self, policy: AccessPolicy | None = None, query_only: bool = True) -> None:
        self.policy = policy if policy is not None else AccessPolicy.untrusted(allowed_relations=[])
        self.query_only = query_only

    def check(self, sql: str, engine: str | None = None, query_only: bool | None = None) -> GuardReport:
        """Validate SQL and report what it touches.

        Args:
            sql: SQL text
            engine: Engine override; defaults to the policy's engine
            query_only: Override the guard's query-only setting

        Raises:
            Violation: When the SQL breaks the policy.
        """
        sql = str(sql or "")
        engine = normalize_engine(engine or self.policy.engine)
        run_query_only = self.query_only if query_only is None else query_only

        if self.policy.is_trusted:
            return GuardReport(
                sql=sql,
                engine=engine,
                functions_used=tuple(sorted(FunctionAllowlistValidator.scan_functions(sql, engine))),
                relations_used=tuple(RelationAccessValidator.scan_relations(sql, engine)),
                enforced=False,
            )

        try:
            if run_query_only:
                QueryOnlyValidator.validate(sql, engine=engine, forbidden_functions=[])

            functions_used = FunctionAllowlistValidator.validate(
                sql,
                engine=engine,
                allowed_functions=self.policy.resolved_allowed_functions(engine=engine),
                forbidden_functions=forbidden_functions_for_engine(engine),
            )

            relations_used = RelationAccessValidator.validate(
                sql,
                engine=engine,
                allowed_relations=self.policy.allowed_relations,
                allowed_schemas=self.policy.allowed_schemas,
                denied_schemas=self.policy.effective_denied_schemas(engine=engine),
            )
        except Violation as e:
            logger.warning("SQL rejected by access policy (%s): %s", e.reason.value, e.message)
            raise

        return GuardReport(
            sql=sql,
            engine=engine,
            functions_used=tuple(sorted(functions_used)),
            relations_used=tuple(relations_used),
        )

    def is_allowed(self, sql: str, engine: str | None = None) -> bool:
        """Return True if check() would pass."""
        try:
            self.check(sql, engine=engine)
        except Violation:
            return False
        return True
