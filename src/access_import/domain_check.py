"""access_import.domain_check

Email-domain checks used during row validation:
  - disposable-domain membership against a set loaded once at startup
  - DNS liveness: the domain must have an address record (A or AAAA) and at
    least one MX record

Lookups are not retried; a lookup that cannot complete raises
DomainLookupError and is reported as a row validation failure.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator

import dns.exception
import dns.resolver

log = logging.getLogger(__name__)


class DomainLookupError(Exception):
    """DNS lookup for an email domain did not succeed.

    not_found is True when the domain does not exist (NXDOMAIN or no address
    record); False when the lookup failed for any other reason.
    """

    def __init__(self, domain: str, not_found: bool, reason: str = "") -> None:
        self.domain = domain
        self.not_found = not_found
        kind = "domain_not_found" if not_found else "lookup_failed"
        super().__init__(f"{kind}: domain={domain!r} {reason}".rstrip())


# ---------------------------------------------------------------------------
# Disposable domains
# ---------------------------------------------------------------------------

class DisposableDomains:
    """Immutable, case-insensitive set of disposable email domains."""

    __slots__ = ("_domains",)

    def __init__(self, domains: Iterable[str] = ()) -> None:
        self._domains = frozenset(
            d.strip().lower() for d in domains if d and d.strip()
        )

    @classmethod
    def from_file(cls, path: Path) -> DisposableDomains:
        """One domain per line; blank lines and '#' comments are ignored."""
        lines = path.read_text(encoding="utf-8").splitlines()
        return cls(line.split("#", 1)[0] for line in lines)

    def union(self, other: Iterable[str]) -> DisposableDomains:
        return DisposableDomains([*self._domains, *other])

    def __contains__(self, domain: object) -> bool:
        return isinstance(domain, str) and domain.strip().lower() in self._domains

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._domains))

    def __len__(self) -> int:
        return len(self._domains)


# ---------------------------------------------------------------------------
# DomainValidator
# ---------------------------------------------------------------------------

class DomainValidator:
    def __init__(
        self,
        disposable: DisposableDomains,
        resolver: dns.resolver.Resolver | None = None,
        lifetime: float | None = None,
    ) -> None:
        self._disposable = disposable
        self._resolver = resolver or dns.resolver.Resolver()
        self._lifetime = lifetime

    def is_disposable(self, domain: str) -> bool:
        return domain in self._disposable

    def _resolve(self, domain: str, rdtype: str) -> int:
        """Return the answer count for rdtype; 0 when the name has no such record."""
        try:
            answer = self._resolver.resolve(domain, rdtype, lifetime=self._lifetime)
        except dns.resolver.NXDOMAIN:
            raise DomainLookupError(domain, not_found=True, reason="nxdomain") from None
        except dns.resolver.NoAnswer:
            return 0
        except dns.resolver.NoNameservers as exc:
            raise DomainLookupError(domain, not_found=False, reason="no_nameservers") from exc
        except dns.exception.Timeout as exc:
            raise DomainLookupError(domain, not_found=False, reason="timeout") from exc
        except dns.exception.DNSException as exc:
            raise DomainLookupError(
                domain, not_found=False, reason=type(exc).__name__
            ) from exc
        return len(answer)

    def has_mail_exchange(self, domain: str) -> bool:
        """True when the domain resolves and has at least one MX record.

        Raises DomainLookupError (not_found=True) when the domain has no
        address record at all.
        """
        if not self._resolve(domain, "A") and not self._resolve(domain, "AAAA"):
            raise DomainLookupError(domain, not_found=True, reason="no_address")
        mx_count = self._resolve(domain, "MX")
        log.debug("domain %s: %d MX records", domain, mx_count)
        return mx_count > 0
