"""
Role Router — Decision authority and ownership resolution.

Every entry in the ledger must end up with an owning role. Ownership is
resolved in this order:

- OWNER SET: the entry names its owner → that role
- INFERRED:  derived from the entry kind
    pending        → the role named in the entry context
    blocked/input  → the owner of the entry it depends on
    any kind       → the static kind → role route table
- APEX:      nothing matched → the apex role, with a warning in the audit trail

Entries are never left ownerless. The role hierarchy itself is validated on
construction: `escalates_to` links must be acyclic and end at exactly one apex.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Iterable, Iterator

from pydantic import BaseModel, Field

from agent_ledger.protocol.errors import (
    EntryNotFound,
    InvalidTransition,
    RoleConfigurationError,
    UnknownRole,
)
from agent_ledger.protocol.schema import (
    AuditSeverity,
    DEFAULT_KIND_ROUTES,
    DEFAULT_ROLES,
    Entry,
    EntryKind,
    EntryStatus,
    Role,
)
from agent_ledger.protocol.state_machine import describe, valid_transitions

logger = logging.getLogger(__name__)

MAX_DEPENDENCY_HOPS = 16


class RoleConfig(BaseModel):
    """On-disk role configuration."""

    roles: list[Role]
    kind_routes: dict[EntryKind, str] = Field(
        default_factory=lambda: dict(DEFAULT_KIND_ROUTES)
    )


class RoleRegistry:
    """
    Immutable set of roles for a run.

    Raises RoleConfigurationError on construction if the escalation relation
    has a cycle, a dangling target, or anything other than one apex role.
    """

    def __init__(
        self,
        roles: Iterable[Role] | None = None,
        kind_routes: dict[EntryKind, str] | None = None,
    ) -> None:
        role_list = list(roles) if roles is not None else list(DEFAULT_ROLES.values())
        self._roles: dict[str, Role] = {}
        for role in role_list:
            if role.name in self._roles:
                raise RoleConfigurationError(f"Duplicate role name: {role.name}")
            self._roles[role.name] = role

        self.apex = self._validate_hierarchy()

        routes = DEFAULT_KIND_ROUTES if kind_routes is None else kind_routes
        self.kind_routes: dict[EntryKind, str] = {}
        for kind, name in routes.items():
            if name in self._roles:
                self.kind_routes[EntryKind(kind)] = name
            elif kind_routes is not None:
                raise RoleConfigurationError(
                    f"Kind route {EntryKind(kind).value} -> {name} names an unknown role"
                )

    def _validate_hierarchy(self) -> Role:
        if not self._roles:
            raise RoleConfigurationError("At least one role is required")

        apexes = [r for r in self._roles.values() if r.escalates_to is None]
        if len(apexes) != 1:
            names = ", ".join(sorted(r.name for r in apexes)) or "none"
            raise RoleConfigurationError(
                f"Exactly one apex role is required, found: {names}"
            )

        for role in self._roles.values():
            if role.escalates_to is not None and role.escalates_to not in self._roles:
                raise RoleConfigurationError(
                    f"Role {role.name} escalates to unknown role {role.escalates_to}"
                )

        for role in self._roles.values():
            seen = {role.name}
            current = role
            while current.escalates_to is not None:
                if current.escalates_to in seen:
                    raise RoleConfigurationError(
                        f"Escalation cycle through role {current.escalates_to}"
                    )
                seen.add(current.escalates_to)
                current = self._roles[current.escalates_to]

        return apexes[0]

    def get(self, name: str | None) -> Role:
        """
        Look up a role by name.

        Raises:
            UnknownRole: If no role has this name.
        """
        if name is None or name not in self._roles:
            raise UnknownRole(name)
        return self._roles[name]

    def chain(self, name: str) -> list[Role]:
        """The escalation path from `name` up to and including the apex."""
        path = [self.get(name)]
        while path[-1].escalates_to is not None:
            path.append(self._roles[path[-1].escalates_to])
        return path

    @property
    def depth(self) -> int:
        """Longest number of escalation hops from any role to the apex."""
        return max(len(self.chain(name)) - 1 for name in self._roles)

    @property
    def names(self) -> list[str]:
        return list(self._roles)

    def __contains__(self, name: object) -> bool:
        return name in self._roles

    def __iter__(self) -> Iterator[Role]:
        return iter(self._roles.values())

    def __len__(self) -> int:
        return len(self._roles)


def load_roles(path: str | Path) -> RoleRegistry:
    """Load and validate a role configuration JSON file."""
    config = RoleConfig.model_validate(
        json.loads(Path(path).read_text(encoding="utf-8"))
    )
    return RoleRegistry(config.roles, config.kind_routes)


class RoleRouter:
    """
    Resolves the owning role of an entry.

    The ledger store is optional; without it, dependency-based inference is
    skipped and routing warnings only go to the log.
    """

    def __init__(self, registry: RoleRegistry, store=None) -> None:
        self.registry = registry
        self.store = store
        names = sorted(registry.names, key=len, reverse=True)
        self._by_lower = {n.lower(): n for n in names}
        self._mention = re.compile(
            r"(?<![\w-])@?(" + "|".join(re.escape(n) for n in names) + r")(?![\w-])",
            re.IGNORECASE,
        )

    def infer_owner(self, entry: Entry) -> Role:
        """
        Infer the owner of an entry without the apex fallback.

        Raises:
            UnknownRole: If the owner is invalid or nothing can be inferred.
        """
        return self._infer(entry, hops=0)

    def owner_for(self, entry: Entry) -> Role:
        """Resolve the owner of an entry, falling back to the apex role."""
        try:
            return self.infer_owner(entry)
        except UnknownRole as exc:
            apex = self.registry.apex
            logger.warning(
                "Routing entry %s to apex role %s: %s", entry.id, apex.name, exc
            )
            if self.store is not None:
                self.store.record_audit(
                    "route_to_apex",
                    entry.id,
                    {"reason": str(exc), "role": exc.role, "apex": apex.name},
                    severity=AuditSeverity.WARNING,
                )
            return apex

    def authorize(
        self,
        entry: Entry,
        acting_role: str,
        target: EntryStatus = EntryStatus.DECIDED,
    ) -> Role:
        """
        Check that `acting_role` owns `entry` and may move it to `target`.

        An entry with no inferable owner belongs to the apex role. The
        fallback is recorded once, when the deciding pass assigns the owner.

        Returns:
            The owning role.

        Raises:
            UnknownRole: If the acting role is not configured.
            InvalidTransition: If the acting role is not the owner.
        """
        acting = self.registry.get(acting_role)
        try:
            owner = self.infer_owner(entry)
        except UnknownRole:
            owner = self.registry.apex
        if acting.name != owner.name:
            raise InvalidTransition(
                entry.id,
                describe(entry.status, target),
                valid_transitions(entry.status),
                reason=f"role {acting.name} does not own this entry",
                required_owner=owner.name,
            )
        return owner

    def role_named_in(self, text: str) -> Role | None:
        """First configured role mentioned in free text, if any."""
        match = self._mention.search(text or "")
        return self.registry.get(self._by_lower[match.group(1).lower()]) if match else None

    def _infer(self, entry: Entry, hops: int) -> Role:
        if entry.owner_role is not None:
            try:
                return self.registry.get(entry.owner_role)
            except UnknownRole:
                raise UnknownRole(entry.owner_role, entry.id) from None

        if entry.kind == EntryKind.PENDING:
            named = self.role_named_in(entry.context)
            if named is not None:
                return named

        if (
            entry.kind in (EntryKind.BLOCKED, EntryKind.INPUT)
            and entry.depends_on
            and self.store is not None
            and hops < MAX_DEPENDENCY_HOPS
        ):
            try:
                dependency = self.store.get(entry.depends_on)
            except EntryNotFound:
                dependency = None
            if dependency is not None:
                try:
                    return self._infer(dependency, hops + 1)
                except UnknownRole:
                    pass

        route = self.registry.kind_routes.get(entry.kind)
        if route is not None:
            return self.registry.get(route)

        raise UnknownRole(None, entry.id)
