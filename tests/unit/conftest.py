"""Unit test fixtures.

No database or network access: the directory is InMemoryDirectory and DNS
answers come from FakeDomainChecker.
"""

from __future__ import annotations

import pytest

from access_import.directory import InMemoryDirectory
from access_import.domain_check import DomainLookupError


class FakeDomainChecker:
    """Answers domain checks from fixed sets; every domain is live by default."""

    def __init__(
        self,
        disposable: set[str] | None = None,
        missing: set[str] | None = None,
        no_mx: set[str] | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.disposable = disposable or set()
        self.missing = missing or set()
        self.no_mx = no_mx or set()
        self.failing = failing or set()
        self.lookups: list[str] = []

    def is_disposable(self, domain: str) -> bool:
        return domain in self.disposable

    def has_mail_exchange(self, domain: str) -> bool:
        self.lookups.append(domain)
        if domain in self.missing:
            raise DomainLookupError(domain, not_found=True)
        if domain in self.failing:
            raise DomainLookupError(domain, not_found=False, reason="timeout")
        return domain not in self.no_mx


@pytest.fixture
def directory() -> InMemoryDirectory:
    return InMemoryDirectory()


@pytest.fixture
def checker() -> FakeDomainChecker:
    return FakeDomainChecker(
        disposable={"mailinator.com"},
        missing={"nowhere.invalid"},
        no_mx={"nomail.example"},
        failing={"slow.example"},
    )


def make_row(**overrides) -> dict[str, str]:
    row = {
        "personId": "",
        "first": "Alice",
        "last": "Smith",
        "cards": "1001",
        "groups": "Staff",
        "email": "alice@example.com",
        "bluetooth": "0",
        "mobile": "0",
        "enabled": "1",
        "pin": "1234",
        "pinDuress": "",
        "activeDate": "2024-01-01",
        "expireDate": "2025-01-01",
    }
    row.update(overrides)
    return row


@pytest.fixture
def row_factory():
    return make_row
