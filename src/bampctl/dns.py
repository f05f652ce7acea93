"""dnsmasq forwarder and resolver stanza for ``*.<suffix>`` resolution."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .directives import Directive, DirectivePatcher
from .templates import TemplateEngine


@dataclass(frozen=True, slots=True)
class DnsDirectives:
    """Lines owned in the dnsmasq config and the resolver file."""

    suffix: str = "test"
    dns_port: int = 53535

    def forwarder(self) -> list[Directive]:
        """dnsmasq settings answering ``*.<suffix>`` with 127.0.0.1."""
        suffix = re.escape(self.suffix)
        return [
            Directive.build("dnsmasq.port", f"port={self.dns_port}", replaces=r"^\s*port=\d+\s*$"),
            Directive.build(
                "dnsmasq.address",
                f"address=/.{self.suffix}/127.0.0.1",
                replaces=rf"^\s*address=/\.?{suffix}/",
            ),
            Directive.build("dnsmasq.no_hosts", "no-hosts"),
            Directive.build("dnsmasq.no_resolv", "no-resolv"),
            Directive.build(
                "dnsmasq.listen_address",
                "listen-address=127.0.0.1",
                replaces=r"^\s*listen-address=",
            ),
        ]

    def resolver(self) -> list[Directive]:
        """``/etc/resolver/<suffix>`` stanza pointing at the forwarder."""
        return [
            Directive.build(
                "resolver.nameserver",
                "nameserver 127.0.0.1",
                replaces=r"^\s*nameserver\s+",
            ),
            Directive.build("resolver.port", f"port {self.dns_port}", replaces=r"^\s*port\s+\d+"),
        ]


class DnsConfigurator:
    """Ensure the forwarder config and resolver stanza through the patcher."""

    def __init__(
        self,
        patcher: DirectivePatcher,
        templates: TemplateEngine,
        *,
        dnsmasq_conf: Path,
        resolver_dir: Path,
        suffix: str = "test",
        dns_port: int = 53535,
    ) -> None:
        self.patcher = patcher
        self.templates = templates
        self.dnsmasq_conf = dnsmasq_conf
        self.resolver_dir = resolver_dir
        self.directives = DnsDirectives(suffix=suffix, dns_port=dns_port)

    @property
    def resolver_path(self) -> Path:
        """The ``/etc/resolver/<suffix>`` file."""
        return self.resolver_dir / self.directives.suffix

    def _context(self) -> dict[str, object]:
        return {"suffix": self.directives.suffix, "dns_port": self.directives.dns_port}

    def ensure_forwarder(self) -> None:
        """Create or patch the dnsmasq configuration."""
        with self.patcher.mutate(self.dnsmasq_conf, create=True) as document:
            self.patcher.seed(
                document,
                self.templates.render_to_string("dns/dnsmasq.conf.j2", self._context()),
            )
            for directive in self.directives.forwarder():
                self.patcher.ensure(document, directive)

    def ensure_resolver(self) -> None:
        """Create or patch the OS resolver stanza for the suffix."""
        with self.patcher.mutate(self.resolver_path, create=True, mode=0o644) as document:
            self.patcher.seed(
                document,
                self.templates.render_to_string("dns/resolver.j2", self._context()),
            )
            for directive in self.directives.resolver():
                self.patcher.ensure(document, directive)


__all__ = ["DnsConfigurator", "DnsDirectives"]
