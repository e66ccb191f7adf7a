"""
Isolation context data model.

An ``IsolationContext`` is an immutable position in the
Platform -> Tenant -> Organization -> Department -> User hierarchy. It is
built through the named factories, validated on construction and never
mutated; every "update" returns a new instance.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from isolation_shared.errors import CacheKeyError, InvalidContextError


MAX_IDENTIFIER_LENGTH = 128
_IDENTIFIER_PATTERN = re.compile(r"^[^\s:*?\[\]\\]+$")
_SEGMENT_WHITESPACE = re.compile(r"\s")

# Slot order used by cache keys, where clauses and containment checks.
IDENTIFIER_SLOTS: Tuple[str, ...] = ("tenant_id", "organization_id", "department_id", "user_id")

CACHE_SEGMENTS: Dict[str, str] = {
    "tenant_id": "tenant",
    "organization_id": "org",
    "department_id": "dept",
    "user_id": "user",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IsolationLevel(str, Enum):
    """Hierarchy levels.

    ``SUPER_ADMIN`` is an alias of ``PLATFORM``: a context with no
    identifiers sits above every tenant.
    """
    PLATFORM = "platform"
    SUPER_ADMIN = "platform"
    TENANT = "tenant"
    ORGANIZATION = "organization"
    DEPARTMENT = "department"
    USER = "user"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            key = value.strip().upper()
            if key in cls.__members__:
                return cls.__members__[key]
            for member in cls:
                if member.value == value.strip().lower():
                    return member
        return None

    @property
    def rank(self) -> int:
        """Authority order: USER < DEPARTMENT < ORGANIZATION < TENANT < PLATFORM."""
        return _RANKS[self]

    @property
    def specificity(self) -> int:
        """Depth in the hierarchy: PLATFORM=0 ... USER=4."""
        return len(_RANKS) - 1 - _RANKS[self]


_RANKS = {
    IsolationLevel.USER: 0,
    IsolationLevel.DEPARTMENT: 1,
    IsolationLevel.ORGANIZATION: 2,
    IsolationLevel.TENANT: 3,
    IsolationLevel.PLATFORM: 4,
}


@dataclass(frozen=True)
class ContextAccessRule:
    """Explicit allow/deny for one resource type and action."""
    resource_type: str
    action: str
    allow: bool

    def matches(self, resource_type: str, action: str) -> bool:
        return self.resource_type in (resource_type, "*") and self.action in (action, "*")

    def to_dict(self) -> Dict[str, Any]:
        return {"resource_type": self.resource_type, "action": self.action, "allow": self.allow}


def _check_identifier(slot: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidContextError(
            f"{slot} must be a string",
            {"violation": "INVALID_IDENTIFIER", "slot": slot, "value": repr(value)}
        )
    if value == "":
        # An empty identifier is the same as an absent one.
        return None
    if len(value) > MAX_IDENTIFIER_LENGTH:
        raise InvalidContextError(
            f"{slot} exceeds {MAX_IDENTIFIER_LENGTH} characters",
            {"violation": "IDENTIFIER_TOO_LONG", "slot": slot}
        )
    if not _IDENTIFIER_PATTERN.match(value):
        raise InvalidContextError(
            f"{slot} must not contain whitespace, ':' or glob characters",
            {"violation": "INVALID_IDENTIFIER_FORMAT", "slot": slot, "value": value}
        )
    return value


def check_key_segments(namespace: str, suffix: Optional[str] = None) -> None:
    """Reject empty or whitespace-bearing cache key segments.

    Namespaces feed invalidation globs, so they follow the identifier format.
    """
    if not isinstance(namespace, str) or not _IDENTIFIER_PATTERN.match(namespace):
        raise CacheKeyError(
            "Cache namespace must be non-empty without whitespace, ':' or glob characters",
            {"namespace": repr(namespace)}
        )
    if suffix is None:
        return
    if not isinstance(suffix, str) or not suffix or _SEGMENT_WHITESPACE.search(suffix):
        raise CacheKeyError(
            "Cache key suffix must be non-empty without whitespace",
            {"suffix": repr(suffix)}
        )


@dataclass(frozen=True, eq=False)
class IsolationContext:
    """Immutable position in the tenancy hierarchy.

    Prefer the factories (``platform``, ``tenant``, ``organization``,
    ``department``, ``user``) over calling the constructor directly.
    """
    tenant_id: Optional[str] = None
    organization_id: Optional[str] = None
    department_id: Optional[str] = None
    user_id: Optional[str] = None
    sharing_level: Optional[IsolationLevel] = None
    is_shared: bool = False
    access_rules: Tuple[ContextAccessRule, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        for slot in IDENTIFIER_SLOTS:
            object.__setattr__(self, slot, _check_identifier(slot, getattr(self, slot)))

        if not isinstance(self.access_rules, tuple):
            object.__setattr__(self, "access_rules", tuple(self.access_rules))
        if self.updated_at is None:
            object.__setattr__(self, "updated_at", self.created_at)

        derived = self._derive_level()
        if self.sharing_level is None:
            object.__setattr__(self, "sharing_level", derived)
        else:
            try:
                supplied = IsolationLevel(self.sharing_level)
            except ValueError:
                raise InvalidContextError(
                    "Unknown sharing level",
                    {"violation": "INVALID_SHARING_LEVEL", "sharing_level": str(self.sharing_level)}
                )
            object.__setattr__(self, "sharing_level", supplied)

        self._validate(derived)

    # Factories

    @classmethod
    def platform(cls) -> "IsolationContext":
        return cls()

    @classmethod
    def tenant(cls, tenant_id: str) -> "IsolationContext":
        cls._require("tenant_id", tenant_id)
        return cls(tenant_id=tenant_id)

    @classmethod
    def organization(cls, tenant_id: str, organization_id: str) -> "IsolationContext":
        cls._require("organization_id", organization_id)
        return cls(tenant_id=tenant_id, organization_id=organization_id)

    @classmethod
    def department(cls, tenant_id: str, organization_id: str, department_id: str) -> "IsolationContext":
        cls._require("department_id", department_id)
        return cls(tenant_id=tenant_id, organization_id=organization_id, department_id=department_id)

    @classmethod
    def user(cls, user_id: str, tenant_id: Optional[str] = None) -> "IsolationContext":
        cls._require("user_id", user_id)
        return cls(tenant_id=tenant_id, user_id=user_id)

    @classmethod
    def from_identifiers(
        cls,
        tenant_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        department_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> "IsolationContext":
        """Build a context of whatever shape the identifiers describe."""
        return cls(
            tenant_id=tenant_id,
            organization_id=organization_id,
            department_id=department_id,
            user_id=user_id,
        )

    @staticmethod
    def _require(slot: str, value: Optional[str]) -> None:
        if value is None or value == "":
            raise InvalidContextError(
                f"{slot} is required",
                {"violation": "MISSING_IDENTIFIER", "slot": slot}
            )

    # Validation

    def _derive_level(self) -> IsolationLevel:
        if self.user_id:
            return IsolationLevel.USER
        if self.department_id:
            return IsolationLevel.DEPARTMENT
        if self.organization_id:
            return IsolationLevel.ORGANIZATION
        if self.tenant_id:
            return IsolationLevel.TENANT
        return IsolationLevel.PLATFORM

    def _validate(self, derived: IsolationLevel) -> None:
        if self.organization_id and not self.tenant_id:
            raise InvalidContextError(
                "Organization context requires a tenant",
                {"violation": "INVALID_ORGANIZATION_CONTEXT", "organization_id": self.organization_id}
            )

        if self.department_id and not self.organization_id:
            raise InvalidContextError(
                "Department context requires an organization",
                {
                    "violation": "INVALID_DEPARTMENT_CONTEXT",
                    "department_id": self.department_id,
                    "has_tenant": bool(self.tenant_id),
                }
            )

        # A user either sits under a department or is the terminal
        # user-scoped context (user plus optional tenant).
        if self.user_id and not self.department_id and self.organization_id:
            raise InvalidContextError(
                "User context requires a department or must be user-scoped",
                {"violation": "INVALID_USER_CONTEXT", "user_id": self.user_id}
            )

        if self.sharing_level is not derived:
            raise InvalidContextError(
                "Sharing level does not match the identifiers present",
                {
                    "violation": "SHARING_LEVEL_MISMATCH",
                    "sharing_level": self.sharing_level.value,
                    "expected": derived.value,
                }
            )

        if not isinstance(self.created_at, datetime) or not isinstance(self.updated_at, datetime):
            raise InvalidContextError(
                "Timestamps must be datetimes",
                {"violation": "INVALID_TIMESTAMPS"}
            )
        try:
            out_of_order = self.updated_at < self.created_at
        except TypeError:
            raise InvalidContextError(
                "Timestamps mix naive and aware datetimes",
                {"violation": "INVALID_TIMESTAMPS"}
            )
        if out_of_order:
            raise InvalidContextError(
                "updated_at precedes created_at",
                {"violation": "INVALID_TIMESTAMPS"}
            )

        for rule in self.access_rules:
            if not isinstance(rule, ContextAccessRule):
                raise InvalidContextError(
                    "Access rules must be ContextAccessRule instances",
                    {"violation": "INVALID_ACCESS_RULES"}
                )

    # Queries

    def get_isolation_level(self) -> IsolationLevel:
        return self.sharing_level

    def is_empty(self) -> bool:
        return not any(getattr(self, slot) for slot in IDENTIFIER_SLOTS)

    def is_platform_level(self) -> bool:
        return self.sharing_level is IsolationLevel.PLATFORM

    def is_tenant_level(self) -> bool:
        return self.sharing_level is IsolationLevel.TENANT

    def is_organization_level(self) -> bool:
        return self.sharing_level is IsolationLevel.ORGANIZATION

    def is_department_level(self) -> bool:
        return self.sharing_level is IsolationLevel.DEPARTMENT

    def is_user_level(self) -> bool:
        return self.sharing_level is IsolationLevel.USER

    def identifiers(self) -> List[Tuple[str, str]]:
        """Present identifiers as ordered ``(slot, value)`` pairs."""
        return [(slot, getattr(self, slot)) for slot in IDENTIFIER_SLOTS if getattr(self, slot)]

    def build_cache_key(self, namespace: str, suffix: str) -> str:
        """Partition key: present segments in tenant, org, dept, user order."""
        check_key_segments(namespace, suffix)
        parts: List[str] = []
        for slot, value in self.identifiers():
            parts.extend((CACHE_SEGMENTS[slot], value))
        if not parts:
            parts.append("platform")
        parts.extend((namespace, suffix))
        return ":".join(parts)

    def build_where_clause(self, alias: Optional[str] = None) -> List[Tuple[str, str]]:
        """Ordered ``(column, value)`` pairs scoping a query to this context."""
        prefix = f"{alias}." if alias else ""
        return [(f"{prefix}{slot}", value) for slot, value in self.identifiers()]

    def build_log_context(self) -> Dict[str, str]:
        return dict(self.identifiers())

    def check_permission(self, resource_type: str, action: str) -> Optional[bool]:
        """First matching access rule's verdict, or None when no rule matches."""
        for rule in self.access_rules:
            if rule.matches(resource_type, action):
                return rule.allow
        return None

    def scope_path(self) -> str:
        """Readable hierarchy path, e.g. ``tenant:t1/org:o1``."""
        segments = [f"{CACHE_SEGMENTS[slot]}:{value}" for slot, value in self.identifiers()]
        return "/".join(segments) if segments else "platform"

    # Derivations

    def _derive(self, **changes) -> "IsolationContext":
        changes.setdefault("sharing_level", None)
        now = _utcnow()
        if self.created_at.tzinfo is None:
            now = now.replace(tzinfo=None)
        changes.setdefault("updated_at", now if now >= self.created_at else self.created_at)
        return replace(self, **changes)

    def with_access_rules(self, rules: Iterable[ContextAccessRule]) -> "IsolationContext":
        return self._derive(access_rules=tuple(rules))

    def shared(self, is_shared: bool = True) -> "IsolationContext":
        return self._derive(is_shared=is_shared)

    def switch_organization(self, organization_id: str) -> "IsolationContext":
        if not self.tenant_id:
            raise InvalidContextError(
                "Switching organization requires a tenant context",
                {"violation": "SWITCH_ORGANIZATION_REQUIRES_TENANT"}
            )
        self._require("organization_id", organization_id)
        return self._derive(organization_id=organization_id, department_id=None, user_id=None)

    def switch_department(self, department_id: str) -> "IsolationContext":
        if not self.tenant_id or not self.organization_id:
            raise InvalidContextError(
                "Switching department requires tenant and organization context",
                {"violation": "SWITCH_DEPARTMENT_REQUIRES_TENANT_AND_ORG"}
            )
        self._require("department_id", department_id)
        return self._derive(department_id=department_id, user_id=None)

    # Dunder

    def _key(self) -> Tuple[Optional[str], ...]:
        return tuple(getattr(self, slot) for slot in IDENTIFIER_SLOTS)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IsolationContext):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "organization_id": self.organization_id,
            "department_id": self.department_id,
            "user_id": self.user_id,
            "sharing_level": self.sharing_level.value,
            "is_shared": self.is_shared,
            "access_rules": [rule.to_dict() for rule in self.access_rules],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
