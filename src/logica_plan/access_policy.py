"""Access policy model for SQL that originates from untrusted input.

An AccessPolicy describes what a compiled statement may touch: which SQL
functions it may call and which relations and schemas it may read. Policies
are immutable values; every identifier-like field is normalized at
construction so that equivalent policies compare (and cache) identically.

Usage:
    >>> from logica_plan.access_policy import AccessPolicy
    >>>
    >>> policy = AccessPolicy.untrusted(engine="psql", allowed_schemas=["bi"])
    >>> sorted(policy.resolved_allowed_functions())
    ['avg', 'cast', 'coalesce', 'count', 'max', 'min', 'nullif', 'sum']
    >>> policy.effective_denied_schemas()
    ('pg_catalog', 'information_schema')
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any


class TrustLevel(str, Enum):
    """Trust level of the source a statement was compiled from."""

    TRUSTED = "trusted"
    UNTRUSTED = "untrusted"


class FunctionProfile(str, Enum):
    """Named function allowlists.

    NONE: No function restrictions
    RAILS_MINIMAL: Basic aggregates only
    RAILS_MINIMAL_PLUS: Basic aggregates plus cast/coalesce/nullif
    CUSTOM: Allowlist supplied explicitly through allowed_functions
    """

    NONE = "none"
    RAILS_MINIMAL = "rails_minimal"
    RAILS_MINIMAL_PLUS = "rails_minimal_plus"
    CUSTOM = "custom"


RAILS_MINIMAL_ALLOWED_FUNCTIONS: frozenset[str] = frozenset(
    {"count", "sum", "avg", "min", "max"}
)
RAILS_MINIMAL_PLUS_ALLOWED_FUNCTIONS: frozenset[str] = (
    RAILS_MINIMAL_ALLOWED_FUNCTIONS | frozenset({"cast", "coalesce", "nullif"})
)

_DEFAULT_DENIED_SCHEMAS: dict[str, tuple[str, ...]] = {
    "psql": ("pg_catalog", "information_schema"),
    "sqlite": ("sqlite_master", "sqlite_temp_master"),
}


def default_denied_schemas(engine: str | None) -> tuple[str, ...]:
    """Schemas (and catalog tables) that are never readable on an engine.

    Unknown engines get the union of every engine's defaults.
    """
    key = (engine or "").strip().lower()
    if key in _DEFAULT_DENIED_SCHEMAS:
        return _DEFAULT_DENIED_SCHEMAS[key]
    return _DEFAULT_DENIED_SCHEMAS["psql"] + _DEFAULT_DENIED_SCHEMAS["sqlite"]


def normalize_optional_string(value: Any) -> str | None:
    """Strip a value to a string, mapping blank values to None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_identifier_list(value: Any) -> tuple[str, ...] | None:
    """Trim, lower-case and deduplicate identifiers, keeping first-seen order.

    None stays None (meaning "not restricted"); a single string is treated as
    a one-element list.
    """
    if value is None:
        return None
    if isinstance(value, (str, bytes)):
        value = [value]

    seen: dict[str, None] = {}
    for item in value:
        if item is None:
            continue
        text = str(item).strip().lower()
        if text:
            seen.setdefault(text, None)
    return tuple(seen)


def normalize_capabilities(value: Any) -> tuple[str, ...]:
    """Trim and deduplicate capability names (case is preserved)."""
    if value is None:
        return ()
    if isinstance(value, (str, bytes)):
        value = [value]

    seen: dict[str, None] = {}
    for item in value:
        if item is None:
            continue
        text = str(getattr(item, "value", item)).strip()
        if text:
            seen.setdefault(text, None)
    return tuple(seen)


def _normalize_allowed_functions(
    value: Any,
) -> frozenset[str] | Mapping[str, frozenset[str]] | None:
    if value is None:
        return None

    if isinstance(value, Mapping):
        per_engine: dict[str, frozenset[str]] = {}
        for engine, functions in value.items():
            key = (normalize_optional_string(engine) or "*").lower()
            per_engine[key] = frozenset(normalize_identifier_list(functions) or ())
        return MappingProxyType(per_engine)

    return frozenset(normalize_identifier_list(value) or ())


def _coerce_enum(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    if value is None or isinstance(value, enum_cls):
        return value
    text = str(value).strip().lower()
    if not text:
        return None
    try:
        return enum_cls(text)
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Unknown {field_name}: {value!r} (expected one of: {choices})")


@dataclass(frozen=True)
class AccessPolicy:
    """Immutable least-privilege policy for compiled SQL.

    Attributes:
        engine: Default engine the policy is evaluated against
        trust: Trust level of the SQL source
        capabilities: Extra capabilities granted to the source
        allowed_relations: Relations ("schema.table" or bare "table") that may be read
        function_profile: Named function allowlist
        allowed_functions: Explicit allowlist, or a per-engine mapping of allowlists
        allowed_schemas: Schemas that may be read when no relation list is set
        denied_schemas: Schemas/tables that may never be read (engine defaults if unset)
        tenant: Opaque tenant identifier for host applications
        timeouts: Opaque timeout settings for host applications
    """

    engine: str | None = None
    trust: TrustLevel | None = None
    capabilities: tuple[str, ...] | None = None
    allowed_relations: tuple[str, ...] | None = None
    function_profile: FunctionProfile | None = None
    allowed_functions: frozenset[str] | Mapping[str, frozenset[str]] | None = None
    allowed_schemas: tuple[str, ...] | None = None
    denied_schemas: tuple[str, ...] | None = None
    tenant: Any = None
    timeouts: Any = None

    def __post_init__(self) -> None:
        engine = normalize_optional_string(self.engine)
        object.__setattr__(self, "engine", engine.lower() if engine else None)
        object.__setattr__(self, "trust", _coerce_enum(TrustLevel, self.trust, "trust"))
        object.__setattr__(
            self,
            "function_profile",
            _coerce_enum(FunctionProfile, self.function_profile, "function_profile"),
        )
        if self.capabilities is not None:
            object.__setattr__(self, "capabilities", normalize_capabilities(self.capabilities))
        object.__setattr__(self, "allowed_relations", normalize_identifier_list(self.allowed_relations))
        object.__setattr__(self, "allowed_functions", _normalize_allowed_functions(self.allowed_functions))
        object.__setattr__(self, "allowed_schemas", normalize_identifier_list(self.allowed_schemas))
        object.__setattr__(self, "denied_schemas", normalize_identifier_list(self.denied_schemas))

    def __hash__(self) -> int:
        # per-engine allowlists and tenant/timeouts values may be unhashable
        return hash(json.dumps(self.to_dict(), sort_keys=True, default=str))

    # -------------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------------

    @classmethod
    def trusted(
        cls,
        engine: str | None = None,
        function_profile: FunctionProfile | str | None = None,
        **kwargs: Any,
    ) -> AccessPolicy:
        """Create a trusted policy (no function restrictions by default)."""
        if function_profile is None:
            function_profile = FunctionProfile.NONE
        kwargs.update(engine=engine, trust=TrustLevel.TRUSTED, function_profile=function_profile)
        return cls(**kwargs)

    @classmethod
    def untrusted(
        cls,
        engine: str | None = None,
        function_profile: FunctionProfile | str | None = None,
        **kwargs: Any,
    ) -> AccessPolicy:
        """Create an untrusted policy (rails_minimal_plus functions by default).

        Keyword arguments override the defaults, including trust.
        """
        if function_profile is None:
            function_profile = FunctionProfile.RAILS_MINIMAL_PLUS
        base: dict[str, Any] = {
            "engine": engine,
            "trust": TrustLevel.UNTRUSTED,
            "function_profile": function_profile,
        }
        base.update(kwargs)
        return cls(**base)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AccessPolicy:
        """Create a policy from a plain mapping (e.g. a parsed YAML file)."""
        known = {
            "engine", "trust", "capabilities", "allowed_relations",
            "function_profile", "allowed_functions", "allowed_schemas",
            "denied_schemas", "tenant", "timeouts",
        }
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown access policy keys: {', '.join(unknown)}")
        return cls(**dict(data))

    def to_dict(self) -> dict[str, Any]:
        """Convert policy to a plain dictionary."""
        functions: Any = self.allowed_functions
        if isinstance(functions, Mapping):
            functions = {k: sorted(v) for k, v in functions.items()}
        elif functions is not None:
            functions = sorted(functions)

        return {
            "engine": self.engine,
            "trust": self.trust.value if self.trust else None,
            "capabilities": list(self.capabilities) if self.capabilities is not None else None,
            "allowed_relations": _as_list(self.allowed_relations),
            "function_profile": self.function_profile.value if self.function_profile else None,
            "allowed_functions": functions,
            "allowed_schemas": _as_list(self.allowed_schemas),
            "denied_schemas": _as_list(self.denied_schemas),
            "tenant": self.tenant,
            "timeouts": self.timeouts,
        }

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def is_trusted(self) -> bool:
        return self.trust == TrustLevel.TRUSTED

    @property
    def is_untrusted(self) -> bool:
        return self.trust == TrustLevel.UNTRUSTED

    @property
    def effective_capabilities(self) -> tuple[str, ...]:
        return self.capabilities if self.capabilities is not None else ()

    @property
    def resolved_function_profile(self) -> FunctionProfile:
        """Explicit profile, else the default for the trust level."""
        if self.function_profile is not None:
            return self.function_profile
        if self.trust == TrustLevel.UNTRUSTED:
            return FunctionProfile.RAILS_MINIMAL_PLUS
        return FunctionProfile.NONE

    def resolved_allowed_functions(self, engine: str | None = None) -> frozenset[str] | None:
        """Resolve the function allowlist for an engine.

        Returns:
            The allowed function names, or None when functions are unrestricted.

        Raises:
            ValueError: If the profile is custom but no allowlist was given.
        """
        resolved_engine = (normalize_optional_string(engine) or self.engine or "").lower()

        if self.allowed_functions is not None:
            return self._resolve_override(self.allowed_functions, resolved_engine)

        profile = self.resolved_function_profile
        if profile == FunctionProfile.RAILS_MINIMAL:
            return RAILS_MINIMAL_ALLOWED_FUNCTIONS
        if profile == FunctionProfile.RAILS_MINIMAL_PLUS:
            return RAILS_MINIMAL_PLUS_ALLOWED_FUNCTIONS
        if profile == FunctionProfile.CUSTOM:
            raise ValueError("function_profile is custom but allowed_functions is not set")
        return None

    @staticmethod
    def _resolve_override(
        value: frozenset[str] | Mapping[str, frozenset[str]],
        engine: str,
    ) -> frozenset[str]:
        if not isinstance(value, Mapping):
            return value

        for key in (engine, "*", "all"):
            if key and key in value:
                return value[key]
        if len(value) == 1:
            return next(iter(value.values()))
        return frozenset()

    def effective_denied_schemas(self, engine: str | None = None) -> tuple[str, ...]:
        """Explicit denied schemas, else the engine's defaults."""
        if self.denied_schemas is not None:
            return self.denied_schemas
        return default_denied_schemas(normalize_optional_string(engine) or self.engine)

    def cache_key_data(self, engine: str | None = None) -> dict[str, Any]:
        """Canonical, order-independent representation for cache keys.

        Every set-valued field is rendered as a sorted list, so policies that
        differ only in list order produce equal data.
        """
        resolved_engine = normalize_optional_string(engine)
        resolved_engine = resolved_engine.lower() if resolved_engine else (self.engine or "")

        allowed = self.resolved_allowed_functions(engine=resolved_engine)

        return {
            "engine": resolved_engine,
            "trust": self.trust.value if self.trust else None,
            "capabilities": sorted(self.effective_capabilities),
            "allowed_relations": sorted(self.allowed_relations or ()),
            "function_profile": self.resolved_function_profile.value,
            "allowed_functions": sorted(allowed) if allowed is not None else None,
            "allowed_schemas": sorted(self.allowed_schemas or ()),
            "denied_schemas": sorted(self.effective_denied_schemas(engine=resolved_engine or None)),
        }

    def cache_key(self, engine: str | None = None) -> str:
        """SHA-256 digest of cache_key_data()."""
        payload = json.dumps(self.cache_key_data(engine=engine), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _as_list(value: Iterable[str] | None) -> list[str] | None:
    return list(value) if value is not None else None
