"""Shared application state tying filter, resolver and readiness together."""

from __future__ import annotations

import dns.name
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from polaris.config import PolarisConfig
from polaris.filter import FilterDecision, FilterSnapshot, InvalidNameError, NormalizedName
from polaris.readiness import ReadinessState
from polaris.resolver import ResolveError, ResolveOutcome, ResolverBuildInfo, ResolverManager


class AppState:
    """Everything the request handlers need, built from one configuration."""

    def __init__(self, config: PolarisConfig) -> None:
        self.filters = FilterSnapshot.from_config(config.filter)
        self.resolver = ResolverManager(config.resolver)
        self.readiness = ReadinessState()
        self.readiness.set_from_build_info(self.resolver.active_info())
        self.config = config
        self.resolve_timeout = config.resolver.resolve_timeout_ms / 1000

    def evaluate_filter(self, name: NormalizedName) -> FilterDecision:
        """Evaluates the current filter rules for a name."""
        return self.filters.evaluate(name)

    async def resolve(self, query: dns.rrset.RRset, dnssec_ok: bool) -> ResolveOutcome:
        """Resolves through the active generation with the configured timeout."""
        return await self.resolver.resolve(query, dnssec_ok, self.resolve_timeout)

    def purge_cache_generation(self) -> ResolverBuildInfo:
        """Swaps in a fresh resolver generation and updates readiness."""
        info = self.resolver.purge_generation()
        self.readiness.set_from_build_info(info)
        return info

    async def run_startup_self_check(self) -> None:
        """Resolves the self-check name's NS records and records the result."""
        settings = self.config.readiness
        if not settings.startup_self_check:
            self.readiness.set_self_check(True)
            return
        try:
            normalized = NormalizedName.parse(settings.self_check_name)
        except InvalidNameError:
            self.readiness.set_self_check(False)
            return
        qname = normalized.fqdn if normalized.canonical else dns.name.root
        query = dns.rrset.RRset(qname, dns.rdataclass.IN, dns.rdatatype.NS)
        try:
            await self.resolve(query, True)
        except ResolveError:
            ok = False
        else:
            ok = True
        self.readiness.set_self_check(ok)