from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import dns.asyncresolver
import dns.exception
import dns.resolver

from shopgate.logging import get_logger

SPF_MARKER = "v=spf1"


@dataclass(frozen=True)
class DomainCheckResult:
    exists: bool
    error: Optional[str] = None


class EmailDomainChecker:
    """Check that an email's domain publishes an SPF record.

    A missing domain or a domain without ``v=spf1`` is a confirmed
    non-existence. Timeouts and resolver failures are reported through
    ``error`` with ``exists=True`` so callers log them and carry on.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        timeout_seconds: float = 3.0,
        resolver: Optional[dns.asyncresolver.Resolver] = None,
    ) -> None:
        self.enabled = enabled
        self.timeout_seconds = timeout_seconds
        self._resolver = resolver
        self.logger = get_logger(__name__)

    def _get_resolver(self) -> dns.asyncresolver.Resolver:
        if self._resolver is None:
            self._resolver = dns.asyncresolver.Resolver()
        return self._resolver

    async def check(self, email: str) -> DomainCheckResult:
        if not self.enabled:
            return DomainCheckResult(exists=True)
        _, _, domain = email.rpartition("@")
        if not domain:
            return DomainCheckResult(exists=False)
        try:
            answer = await self._get_resolver().resolve(
                domain, "TXT", lifetime=self.timeout_seconds
            )
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return DomainCheckResult(exists=False)
        except dns.exception.DNSException as exc:
            return DomainCheckResult(exists=True, error=f"{type(exc).__name__}: {exc}")

        for rdata in answer:
            text = b"".join(rdata.strings).decode("utf-8", errors="replace")
            if SPF_MARKER in text:
                return DomainCheckResult(exists=True)
        return DomainCheckResult(exists=False)
