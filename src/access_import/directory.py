"""access_import.directory

Directory entities and the repository contract consumed by the row
reconciler, plus a thread-safe in-memory implementation.

The PostgreSQL implementation lives in access_import.pg_directory.
"""

from __future__ import annotations

import copy
import enum
import itertools
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Protocol

from access_import.normalize import normalize_email


class CredentialType(str, enum.Enum):
    CARD = "CARD"
    BLUETOOTH = "BLUETOOTH"
    MOBILE = "MOBILE"


@dataclass
class Credential:
    id: str
    type: CredentialType
    person_id: str
    value: str | None = None


@dataclass
class Group:
    id: str
    name: str


@dataclass
class PersonFields:
    """Scalar fields written on create; `id` is optional (externally supplied)."""

    first: str | None
    last: str | None
    email: str | None
    enabled: bool = False
    pin: int | None = None
    pin_duress: int | None = None
    active_date: datetime | None = None
    expire_date: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass
class PersonRecord:
    id: str
    first: str | None
    last: str | None
    email: str | None
    enabled: bool = False
    pin: int | None = None
    pin_duress: int | None = None
    active_date: datetime | None = None
    expire_date: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    credentials: list[Credential] = field(default_factory=list)
    group_ids: list[str] = field(default_factory=list)

    def credentials_of(self, kind: CredentialType) -> list[Credential]:
        return [c for c in self.credentials if c.type is kind]


class DirectoryRepository(Protocol):
    """Store of people, credentials and groups.

    Implementations must be safe to call from several threads at once.
    No operation spans more than one call; there is no rollback.
    """

    def find_person(self, person_id: str | None, email: str | None) -> PersonRecord | None:
        """Return the oldest person whose id equals person_id OR whose email
        equals email (case-insensitive), with credentials and group ids."""

    def find_persons_by_name(self, first: str | None, last: str | None) -> list[PersonRecord]:
        ...

    def create_person(self, fields: PersonFields) -> PersonRecord:
        ...

    def update_person(self, person: PersonRecord) -> None:
        """Persist scalar fields and metadata of an existing person."""

    def create_credential(
        self, person_id: str, kind: CredentialType, value: str | None = None
    ) -> Credential:
        ...

    def delete_credentials(self, ids: Iterable[str]) -> None:
        ...

    def find_groups_by_name(self, names: Iterable[str]) -> list[Group]:
        ...

    def create_group(self, name: str) -> Group:
        ...

    def create_membership(self, group_id: str, person_id: str) -> None:
        ...


# ---------------------------------------------------------------------------
# InMemoryDirectory
# ---------------------------------------------------------------------------

class InMemoryDirectory:
    """Process-local directory guarded by one lock.

    Every read returns copies so callers never hold live state.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._seq = itertools.count()
        # person id -> (insertion sequence, record)
        self._people: dict[str, tuple[int, PersonRecord]] = {}
        self._credentials: dict[str, Credential] = {}
        self._groups: dict[str, Group] = {}
        self._memberships: set[tuple[str, str]] = set()

    # -- people -------------------------------------------------------------

    def _hydrate(self, person: PersonRecord) -> PersonRecord:
        out = copy.deepcopy(person)
        out.credentials = [
            copy.copy(c) for c in self._credentials.values() if c.person_id == person.id
        ]
        out.group_ids = sorted(g for g, p in self._memberships if p == person.id)
        return out

    def _ordered(self) -> list[PersonRecord]:
        return [p for _, p in sorted(self._people.values(), key=lambda item: item[0])]

    def find_person(self, person_id: str | None, email: str | None) -> PersonRecord | None:
        email_norm = normalize_email(email)
        with self._lock:
            for person in self._ordered():
                if person_id is not None and person.id == person_id:
                    return self._hydrate(person)
                if email_norm is not None and normalize_email(person.email) == email_norm:
                    return self._hydrate(person)
        return None

    def find_persons_by_name(self, first: str | None, last: str | None) -> list[PersonRecord]:
        with self._lock:
            return [
                self._hydrate(p)
                for p in self._ordered()
                if p.first == first and p.last == last
            ]

    def create_person(self, fields: PersonFields) -> PersonRecord:
        with self._lock:
            person_id = fields.id or str(uuid.uuid4())
            if person_id in self._people:
                raise ValueError(f"person {person_id!r} already exists")
            person = PersonRecord(
                id=person_id,
                first=fields.first,
                last=fields.last,
                email=fields.email,
                enabled=fields.enabled,
                pin=fields.pin,
                pin_duress=fields.pin_duress,
                active_date=fields.active_date,
                expire_date=fields.expire_date,
                metadata=dict(fields.metadata),
            )
            self._people[person_id] = (next(self._seq), person)
            return self._hydrate(person)

    def update_person(self, person: PersonRecord) -> None:
        with self._lock:
            seq, stored = self._people[person.id]
            stored.first = person.first
            stored.last = person.last
            stored.email = person.email
            stored.enabled = person.enabled
            stored.pin = person.pin
            stored.pin_duress = person.pin_duress
            stored.active_date = person.active_date
            stored.expire_date = person.expire_date
            stored.metadata = dict(person.metadata)

    def all_people(self) -> list[PersonRecord]:
        with self._lock:
            return [self._hydrate(p) for p in self._ordered()]

    # -- credentials --------------------------------------------------------

    def create_credential(
        self, person_id: str, kind: CredentialType, value: str | None = None
    ) -> Credential:
        with self._lock:
            if person_id not in self._people:
                raise KeyError(person_id)
            credential = Credential(
                id=str(uuid.uuid4()), type=kind, person_id=person_id, value=value
            )
            self._credentials[credential.id] = credential
            return copy.copy(credential)

    def delete_credentials(self, ids: Iterable[str]) -> None:
        with self._lock:
            for credential_id in ids:
                self._credentials.pop(credential_id, None)

    # -- groups -------------------------------------------------------------

    def find_groups_by_name(self, names: Iterable[str]) -> list[Group]:
        wanted = set(names)
        with self._lock:
            return [copy.copy(g) for g in self._groups.values() if g.name in wanted]

    def create_group(self, name: str) -> Group:
        with self._lock:
            for group in self._groups.values():
                if group.name == name:
                    return copy.copy(group)
            group = Group(id=str(uuid.uuid4()), name=name)
            self._groups[group.id] = group
            return copy.copy(group)

    def create_membership(self, group_id: str, person_id: str) -> None:
        with self._lock:
            self._memberships.add((group_id, person_id))
