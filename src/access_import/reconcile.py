"""access_import.reconcile

Per-row reconciliation of a decoded personnel row against the directory.

Row ordering:
  1. Optional fixed delay (makes progress visible to a watching client).
  2. Take the per-key locks for this row (id, email, name).
  3. Look up the matching person: supplied id OR email, first match wins.
     When a person matches, also lock that person and look it up again, so
     rows reaching the same person through different keys never interleave.
  4. Validate.  All checks run; failures are combined into one error and
     nothing is written for the row.
  5. Create the person (CREATE) or overwrite its scalar fields (UPDATE),
     merging custom.* columns into metadata without dropping other keys.
  6. Cards: add missing values, never remove.
  7. Bluetooth / mobile: target 0 deletes all; fewer than target creates the
     deficit (one invitation each); more than a non-zero target is left as is.
  8. Groups: create groups that do not exist and link the person to them.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time
from typing import Any, Iterable, Iterator, Mapping, Protocol

from access_import.directory import (
    CredentialType,
    DirectoryRepository,
    PersonFields,
    PersonRecord,
)
from access_import.domain_check import DomainLookupError
from access_import.normalize import (
    normalize_email,
    normalize_name,
    parse_count,
    parse_datetime,
    parse_flag,
    parse_pin,
    split_list,
    trim,
)
from access_import.shared import ProcessResult, RowStatus, RowValidationError

log = logging.getLogger(__name__)

CUSTOM_PREFIX = "custom."
MAX_NAME_LENGTH = 50
MAX_PIN = 9_999_999_999

_EMAIL_SHAPE = re.compile(r"^\S+@\S+\.\S+$")


def _json_value(value: Any) -> Any:
    """Metadata values must be JSON scalars; workbook dates become ISO text."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (date, dt_time)):
        return value.isoformat()
    return str(value)


class EmailDomainChecker(Protocol):
    def is_disposable(self, domain: str) -> bool: ...

    def has_mail_exchange(self, domain: str) -> bool: ...


# ---------------------------------------------------------------------------
# Row
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Row:
    """One decoded record: fixed core fields plus the custom.* side mapping.

    `invalid` lists core fields whose cell could not be parsed.
    """

    person_id: str | None = None
    first: str | None = None
    last: str | None = None
    email: str | None = None
    cards: tuple[str, ...] = ()
    groups: tuple[str, ...] = ()
    bluetooth: int = 0
    mobile: int = 0
    enabled: bool = False
    pin: int | None = None
    pin_duress: int | None = None
    active_date: datetime | None = None
    expire_date: datetime | None = None
    custom: Mapping[str, Any] = field(default_factory=dict)
    invalid: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> Row:
        invalid: list[str] = []

        def parsed(name: str, parser, default=None):
            try:
                return parser(raw.get(name))
            except ValueError:
                invalid.append(name)
                return default

        custom = {
            key[len(CUSTOM_PREFIX):]: _json_value(value)
            for key, value in raw.items()
            if key.startswith(CUSTOM_PREFIX) and len(key) > len(CUSTOM_PREFIX)
        }
        return cls(
            person_id=trim(raw.get("personId")),
            first=trim(raw.get("first")),
            last=trim(raw.get("last")),
            email=normalize_email(raw.get("email")),
            cards=tuple(split_list(raw.get("cards"))),
            groups=tuple(split_list(raw.get("groups"))),
            bluetooth=parsed("bluetooth", parse_count, 0),
            mobile=parsed("mobile", parse_count, 0),
            enabled=parse_flag(raw.get("enabled")),
            pin=parsed("pin", parse_pin),
            pin_duress=parsed("pinDuress", parse_pin),
            active_date=parsed("activeDate", parse_datetime),
            expire_date=parsed("expireDate", parse_datetime),
            custom=custom,
            invalid=tuple(invalid),
        )

    def lock_keys(self) -> list[str]:
        keys = []
        if self.person_id:
            keys.append(f"id:{self.person_id}")
        if self.email:
            keys.append(f"email:{self.email}")
        # Folded name: broader than the exact-name collision query, which only
        # serializes a few extra rows.
        name = normalize_name(f"{self.first or ''} {self.last or ''}")
        if name:
            keys.append(f"name:{name}")
        return keys

    def person_fields(self) -> PersonFields:
        return PersonFields(
            id=self.person_id,
            first=self.first,
            last=self.last,
            email=self.email,
            enabled=self.enabled,
            pin=self.pin,
            pin_duress=self.pin_duress,
            active_date=self.active_date,
            expire_date=self.expire_date,
            metadata=dict(self.custom),
        )


# ---------------------------------------------------------------------------
# KeyedLocks
# ---------------------------------------------------------------------------

class KeyedLocks:
    """Mutex per key, created on demand and dropped when unused.

    hold() acquires every requested key in sorted order, so two callers with
    overlapping key sets cannot deadlock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list[Any]] = {}  # key -> [lock, holders]

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[0].release()
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[str]) -> Iterator[None]:
        acquired: list[str] = []
        try:
            for key in sorted(set(keys)):
                self._checkout(key).acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._checkin(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _check_email_domain(email: str | None, checker: EmailDomainChecker) -> list[str]:
    errors: list[str] = []
    if email and not _EMAIL_SHAPE.match(email):
        errors.append("Invalid email address.")
    domain = email.split("@", 1)[1] if email and "@" in email else None
    if not domain:
        errors.append("Invalid email format.")
        return errors
    if checker.is_disposable(domain):
        errors.append("Disposable email addresses are not allowed.")
    try:
        if not checker.has_mail_exchange(domain):
            errors.append("No MX records found.")
    except DomainLookupError as exc:
        if exc.not_found:
            errors.append("Domain does not exist.")
        else:
            log.info("Domain check failed for %s: %s", domain, exc)
            errors.append("Failed to verify email domain.")
    return errors


def validate_row(
    row: Row,
    match: PersonRecord | None,
    directory: DirectoryRepository,
    checker: EmailDomainChecker,
) -> list[str]:
    """Run every row check and return the failures (empty when valid).

    `match` is the person this row would update, if any; a same-name person
    other than that one is a collision.
    """
    errors: list[str] = []

    if (
        not row.first
        or len(row.first) > MAX_NAME_LENGTH
        or not row.last
        or len(row.last) > MAX_NAME_LENGTH
    ):
        errors.append("Invalid first or last name.")

    errors.extend(_check_email_domain(row.email, checker))

    if "pin" in row.invalid or "pinDuress" in row.invalid:
        errors.append("Pin or duress pin must be numeric.")
    if (row.pin is not None and row.pin > MAX_PIN) or (
        row.pin_duress is not None and row.pin_duress > MAX_PIN
    ):
        errors.append("Pin or duress pin exceeds maximum value.")

    if "bluetooth" in row.invalid or "mobile" in row.invalid:
        errors.append("Invalid bluetooth or mobile credential count.")
    if not row.email and (row.bluetooth > 0 or row.mobile > 0):
        errors.append("Bluetooth or mobile credential specified without an email address.")

    if "activeDate" in row.invalid or "expireDate" in row.invalid:
        errors.append("Invalid active or expire date.")

    if row.first or row.last:
        same_name = directory.find_persons_by_name(row.first, row.last)
        match_id = match.id if match else None
        if any(p.id != match_id for p in same_name):
            errors.append(f"Person with the name {row.first} {row.last} already exists.")

    return errors


# ---------------------------------------------------------------------------
# RowReconciler
# ---------------------------------------------------------------------------

class RowReconciler:
    def __init__(
        self,
        directory: DirectoryRepository,
        checker: EmailDomainChecker,
        row_delay: float = 0.0,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._directory = directory
        self._checker = checker
        self._row_delay = row_delay
        self._locks = locks

    def reconcile(self, file_label: str, row: Row) -> ProcessResult:
        if self._row_delay > 0:
            time.sleep(self._row_delay)
        if self._locks is None:
            match = self._directory.find_person(row.person_id, row.email)
            result = self._validate_and_apply(file_label, row, match)
        else:
            with self._locks.hold(row.lock_keys()):
                result = self._reconcile_matched(file_label, row, self._locks)
        log.debug("%s: %s person %s (%d invites)", file_label, result.status.value,
                  row.email or row.person_id, result.invites)
        return result

    def _reconcile_matched(self, file_label: str, row: Row, locks: KeyedLocks) -> ProcessResult:
        """Hold person:<id> for the matched person; re-match under it until stable.

        Person locks are only taken while the row's own keys are held, so the
        two lock levels cannot deadlock.
        """
        match = self._directory.find_person(row.person_id, row.email)
        while match is not None:
            with locks.hold([f"person:{match.id}"]):
                current = self._directory.find_person(row.person_id, row.email)
                if current is not None and current.id == match.id:
                    return self._validate_and_apply(file_label, row, current)
            match = current
        return self._validate_and_apply(file_label, row, None)

    def _validate_and_apply(
        self, file_label: str, row: Row, match: PersonRecord | None
    ) -> ProcessResult:
        errors = validate_row(row, match, self._directory, self._checker)
        if errors:
            return ProcessResult.failed(str(RowValidationError(file_label, errors)))
        return self._apply(row, match)

    # -- reconciliation stage ----------------------------------------------

    def _apply(self, row: Row, match: PersonRecord | None) -> ProcessResult:
        if match is None:
            person = self._directory.create_person(row.person_fields())
            status = RowStatus.CREATE
        else:
            person = match
            person.first = row.first
            person.last = row.last
            person.email = row.email
            person.enabled = row.enabled
            person.pin = row.pin
            person.pin_duress = row.pin_duress
            person.active_date = row.active_date
            person.expire_date = row.expire_date
            person.metadata = {**person.metadata, **row.custom}
            self._directory.update_person(person)
            status = RowStatus.UPDATE

        self._add_cards(person, row.cards)
        invites = self._sync_enrollments(person, CredentialType.BLUETOOTH, row.bluetooth)
        invites += self._sync_enrollments(person, CredentialType.MOBILE, row.mobile)
        self._add_groups(person, row.groups)
        return ProcessResult(status, invites=invites)

    def _add_cards(self, person: PersonRecord, cards: Iterable[str]) -> None:
        existing = {c.value for c in person.credentials_of(CredentialType.CARD)}
        for value in cards:
            if value in existing:
                continue
            self._directory.create_credential(person.id, CredentialType.CARD, value)
            existing.add(value)

    def _sync_enrollments(self, person: PersonRecord, kind: CredentialType, target: int) -> int:
        """Drive bluetooth/mobile credentials toward target.  Returns invites issued."""
        current = person.credentials_of(kind)
        if target == 0:
            if current:
                self._directory.delete_credentials(c.id for c in current)
            return 0
        issued = 0
        for _ in range(target - len(current)):
            self._directory.create_credential(person.id, kind)
            issued += 1
        return issued

    def _add_groups(self, person: PersonRecord, names: Iterable[str]) -> None:
        names = list(names)
        if not names:
            return
        existing = {g.name for g in self._directory.find_groups_by_name(names)}
        for name in names:
            if name in existing:
                continue
            group = self._directory.create_group(name)
            self._directory.create_membership(group.id, person.id)
            existing.add(name)
