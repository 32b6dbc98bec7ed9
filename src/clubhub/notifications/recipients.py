"""
Recipient specifications and their resolution.

A specification is one of three variants:

- ``Direct(ids)``: explicit user ids.
- ``Group(kind, key)``: membership of a named group, e.g. ``Group("club", club_id)``
  (the club's core members).
- ``Everyone``: every user.

Shapes nobody recognises become ``Unresolved``: they always defer to the
worker, which expands them to nobody and fails the meta notification.

``resolve_recipients`` is the producer-side, bounded resolution: it returns
an id list or ``DEFERRED`` when the set is unknown, empty or too large to
expand inline. ``expand_recipients`` is the worker-side, unbounded one.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, Union

from clubhub.notifications.models import Channel


@dataclass(frozen=True)
class Direct:
    ids: tuple[str, ...]

    def __init__(self, ids: Iterable[Any]):
        object.__setattr__(self, "ids", tuple(str(i) for i in ids if i))


@dataclass(frozen=True)
class Group:
    kind: str
    key: str


@dataclass(frozen=True)
class Everyone:
    pass


@dataclass(frozen=True)
class Unresolved:
    description: str


RecipientSpec = Union[Direct, Group, Everyone, Unresolved]

EVERYONE = Everyone()


class Deferred:
    """Marker: the producer leaves resolution to the worker."""

    _instance: "Deferred | None" = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DEFERRED"


DEFERRED = Deferred()

PAYLOAD_TYPES = frozenset({"direct", "group", "everyone", "unresolved"})


class RecipientDirectory(Protocol):
    """User lookups the notification core needs from the surrounding application."""

    def existing_user_ids(self, user_ids: Sequence[str]) -> list[str]:
        """Return the subset of ``user_ids`` that exist."""
        ...

    def group_members(self, kind: str, key: str) -> list[str] | None:
        """Return member ids of a group, or None for a group kind the directory does not know."""
        ...

    def all_user_ids(self) -> Iterable[str]: ...

    def contact_for(self, user_id: str, channel: Channel) -> str | None:
        """Transport target for a user on a channel (email address, device token, phone)."""
        ...


def parse_recipients(raw: Any) -> RecipientSpec:
    """
    Accept the loosely-typed shapes callers have historically passed.

    ``"all"`` or None, a single id, a list of ids, ``{"user": id}``,
    ``{"users": [...]}``, ``{"club": id}`` and any ``{"group": kind, "key": key}``.
    Any other single-entry filter such as ``{"role": "admin"}`` is taken as a
    group for the directory to resolve. Already-typed specifications pass
    through unchanged, and nothing raises.
    """
    if isinstance(raw, (Direct, Group, Everyone, Unresolved)):
        return raw
    if raw is None or raw == "all":
        return EVERYONE
    if isinstance(raw, str) or (isinstance(raw, int) and not isinstance(raw, bool)):
        return Direct([raw])
    if isinstance(raw, (list, tuple, set, frozenset)):
        return Direct([r for r in raw if isinstance(r, str)])
    if isinstance(raw, dict):
        if raw.get("type") in PAYLOAD_TYPES:
            return from_payload(raw)
        if raw.get("user"):
            return parse_recipients(raw["user"])
        if raw.get("users"):
            return parse_recipients(list(raw["users"]))
        if raw.get("club"):
            return Group("club", str(raw["club"]))
        if raw.get("group") and raw.get("key"):
            return Group(str(raw["group"]), str(raw["key"]))
        if len(raw) == 1:
            ((kind, key),) = raw.items()
            if isinstance(key, (str, int)) and not isinstance(key, bool):
                return Group(str(kind), str(key))
    return Unresolved(repr(raw))


def to_payload(spec: RecipientSpec) -> dict[str, Any]:
    """Serialize a specification for the ``recipient_group`` column."""
    if isinstance(spec, Direct):
        return {"type": "direct", "ids": list(spec.ids)}
    if isinstance(spec, Group):
        return {"type": "group", "kind": spec.kind, "key": spec.key}
    if isinstance(spec, Unresolved):
        return {"type": "unresolved", "description": spec.description}
    return {"type": "everyone"}


def from_payload(data: dict[str, Any]) -> RecipientSpec:
    kind = data.get("type")
    if kind == "direct":
        return Direct(data.get("ids") or [])
    if kind == "group":
        return Group(str(data["kind"]), str(data["key"]))
    if kind == "everyone":
        return EVERYONE
    if kind == "unresolved":
        return Unresolved(str(data.get("description", "")))
    raise ValueError(f"Unknown recipients payload type: {kind!r}")


def _unique(ids: Iterable[Any]) -> list[str]:
    return list(dict.fromkeys(str(i) for i in ids if i))


def resolve_recipients(
    spec: RecipientSpec, directory: RecipientDirectory, *, max_fanout: int
) -> list[str] | Deferred:
    """Bounded producer-side resolution; never returns an empty list."""
    if isinstance(spec, (Everyone, Unresolved)):
        return DEFERRED

    if isinstance(spec, Direct):
        ids = _unique(directory.existing_user_ids(list(spec.ids))) if spec.ids else []
    else:
        members = directory.group_members(spec.kind, spec.key)
        if members is None:
            return DEFERRED
        ids = _unique(members)

    if not ids or len(ids) > max_fanout:
        return DEFERRED
    return ids


def expand_recipients(spec: RecipientSpec, directory: RecipientDirectory) -> list[str]:
    """Unbounded worker-side resolution, used to fan out meta notifications."""
    if isinstance(spec, Unresolved):
        return []
    if isinstance(spec, Everyone):
        return _unique(directory.all_user_ids())
    if isinstance(spec, Direct):
        return _unique(directory.existing_user_ids(list(spec.ids))) if spec.ids else []
    return _unique(directory.group_members(spec.kind, spec.key) or [])
