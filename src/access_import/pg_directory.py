"""access_import.pg_directory

PostgreSQL directory repository (schema: migrations/0001_directory.sql).

Each operation checks a connection out of a psycopg_pool.ConnectionPool and
commits on return, so concurrent rows never share a transaction and a failed
row leaves earlier writes in place.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable

import psycopg
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from access_import.directory import (
    Credential,
    CredentialType,
    Group,
    PersonFields,
    PersonRecord,
)
from access_import.normalize import normalize_email

log = logging.getLogger(__name__)

_PERSON_COLUMNS = """
    id, first_name, last_name, email, enabled, pin, pin_duress,
    active_date, expire_date, metadata
"""


def _pin_text(pin: int | None) -> str | None:
    return str(pin) if pin is not None else None


def _pin_value(raw: str | None) -> int | None:
    return int(raw) if raw is not None else None


def _person_from_row(row: tuple[Any, ...]) -> PersonRecord:
    return PersonRecord(
        id=row[0],
        first=row[1],
        last=row[2],
        email=row[3],
        enabled=bool(row[4]),
        pin=_pin_value(row[5]),
        pin_duress=_pin_value(row[6]),
        active_date=row[7],
        expire_date=row[8],
        metadata=dict(row[9] or {}),
    )


class PgDirectory:
    """Directory repository backed by PostgreSQL."""

    def __init__(self, dsn: str, max_size: int = 10) -> None:
        self._pool = ConnectionPool(
            dsn, min_size=1, max_size=max_size, open=True, name="access_import"
        )

    def close(self) -> None:
        self._pool.close()

    # -- people -------------------------------------------------------------

    def _load_children(self, conn: psycopg.Connection, person: PersonRecord) -> PersonRecord:
        creds = conn.execute(
            """
            SELECT id, type, value FROM credential
            WHERE person_id = %s
            ORDER BY created_at ASC, id ASC
            """,
            (person.id,),
        ).fetchall()
        person.credentials = [
            Credential(id=c[0], type=CredentialType(c[1]), person_id=person.id, value=c[2])
            for c in creds
        ]
        groups = conn.execute(
            "SELECT group_id FROM group_membership WHERE person_id = %s ORDER BY group_id",
            (person.id,),
        ).fetchall()
        person.group_ids = [g[0] for g in groups]
        return person

    def find_person(self, person_id: str | None, email: str | None) -> PersonRecord | None:
        email_norm = normalize_email(email)
        if person_id is None and email_norm is None:
            return None
        with self._pool.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_PERSON_COLUMNS} FROM person
                WHERE id = %s OR lower(email) = %s
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """,
                (person_id, email_norm),
            ).fetchone()
            if row is None:
                return None
            return self._load_children(conn, _person_from_row(row))

    def find_persons_by_name(self, first: str | None, last: str | None) -> list[PersonRecord]:
        with self._pool.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_PERSON_COLUMNS} FROM person
                WHERE first_name IS NOT DISTINCT FROM %s
                  AND last_name IS NOT DISTINCT FROM %s
                ORDER BY created_at ASC, id ASC
                """,
                (first, last),
            ).fetchall()
            return [self._load_children(conn, _person_from_row(r)) for r in rows]

    def create_person(self, fields: PersonFields) -> PersonRecord:
        person_id = fields.id or str(uuid.uuid4())
        with self._pool.connection() as conn:
            row = conn.execute(
                f"""
                INSERT INTO person
                  (id, first_name, last_name, email, enabled, pin, pin_duress,
                   active_date, expire_date, metadata)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_PERSON_COLUMNS}
                """,
                (
                    person_id, fields.first, fields.last, fields.email, fields.enabled,
                    _pin_text(fields.pin), _pin_text(fields.pin_duress),
                    fields.active_date, fields.expire_date, Jsonb(fields.metadata),
                ),
            ).fetchone()
        return _person_from_row(row)

    def update_person(self, person: PersonRecord) -> None:
        with self._pool.connection() as conn:
            conn.execute(
                """
                UPDATE person SET
                  first_name = %s,
                  last_name = %s,
                  email = %s,
                  enabled = %s,
                  pin = %s,
                  pin_duress = %s,
                  active_date = %s,
                  expire_date = %s,
                  metadata = %s,
                  updated_at = now()
                WHERE id = %s
                """,
                (
                    person.first, person.last, person.email, person.enabled,
                    _pin_text(person.pin), _pin_text(person.pin_duress),
                    person.active_date, person.expire_date, Jsonb(person.metadata),
                    person.id,
                ),
            )

    # -- credentials --------------------------------------------------------

    def create_credential(
        self, person_id: str, kind: CredentialType, value: str | None = None
    ) -> Credential:
        credential_id = str(uuid.uuid4())
        with self._pool.connection() as conn:
            conn.execute(
                "INSERT INTO credential (id, person_id, type, value) VALUES (%s, %s, %s, %s)",
                (credential_id, person_id, kind.value, value),
            )
        return Credential(id=credential_id, type=kind, person_id=person_id, value=value)

    def delete_credentials(self, ids: Iterable[str]) -> None:
        id_list = list(ids)
        if not id_list:
            return
        with self._pool.connection() as conn:
            conn.execute("DELETE FROM credential WHERE id = ANY(%s)", (id_list,))

    # -- groups -------------------------------------------------------------

    def find_groups_by_name(self, names: Iterable[str]) -> list[Group]:
        name_list = list(names)
        if not name_list:
            return []
        with self._pool.connection() as conn:
            rows = conn.execute(
                "SELECT id, name FROM access_group WHERE name = ANY(%s) ORDER BY name",
                (name_list,),
            ).fetchall()
        return [Group(id=r[0], name=r[1]) for r in rows]

    def create_group(self, name: str) -> Group:
        with self._pool.connection() as conn:
            row = conn.execute(
                """
                INSERT INTO access_group (id, name) VALUES (%s, %s)
                ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name
                RETURNING id, name
                """,
                (str(uuid.uuid4()), name),
            ).fetchone()
        return Group(id=row[0], name=row[1])

    def create_membership(self, group_id: str, person_id: str) -> None:
        with self._pool.connection() as conn:
            conn.execute(
                """
                INSERT INTO group_membership (group_id, person_id)
                VALUES (%s, %s)
                ON CONFLICT (group_id, person_id) DO NOTHING
                """,
                (group_id, person_id),
            )

    # -- disposable domains -------------------------------------------------

    def disposable_domains(self) -> list[str]:
        with self._pool.connection() as conn:
            rows = conn.execute("SELECT domain FROM disposable_domain").fetchall()
        return [r[0] for r in rows]

    def add_disposable_domains(self, domains: Iterable[str]) -> int:
        """Insert domains (lowercased); returns how many were new."""
        inserted = 0
        with self._pool.connection() as conn:
            for domain in domains:
                result = conn.execute(
                    """
                    INSERT INTO disposable_domain (domain) VALUES (%s)
                    ON CONFLICT (domain) DO NOTHING
                    RETURNING domain
                    """,
                    (domain.lower(),),
                ).fetchone()
                if result:
                    inserted += 1
        log.info("Loaded %d new disposable domains", inserted)
        return inserted
