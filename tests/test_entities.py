"""Tests for the virtual host entity store."""
from __future__ import annotations

from pathlib import Path

import pytest

from bampctl.entities import EntityStore, VHostEntry, parse_vhost, validate_domain
from bampctl.errors import AlreadyExists, EntityNotFound, ValidationError
from bampctl.policy import ActionJournal, ReconciliationPolicy, StepStatus
from bampctl.templates import TemplateEngine


def _render(domain: str, root: Path, certs: Path) -> str:
    return TemplateEngine.with_overrides(None).render_to_string(
        "httpd/vhost.conf.j2",
        {
            "domain": domain,
            "document_root": str(root),
            "http_port": 80,
            "https_port": 443,
            "certificate": str(certs / "_wildcard.test.pem"),
            "certificate_key": str(certs / "_wildcard.test-key.pem"),
            "log_dir": "/tmp/logs",
        },
    )


def _store(tmp_path: Path, *, dry_run: bool = False) -> tuple[EntityStore, ActionJournal]:
    journal = ActionJournal()
    store = EntityStore(tmp_path / "vhosts", ReconciliationPolicy(dry_run=dry_run), journal)
    return store, journal


@pytest.mark.parametrize("domain", ["blog.test", "my-app.test", "a1.b2.test"])
def test_validate_domain_accepts(domain: str) -> None:
    """Letters, digits, dots and hyphens are accepted."""
    assert validate_domain(domain) == domain


@pytest.mark.parametrize("domain", ["", "bad domain.test", "../etc.test", ".test", "x/y.test"])
def test_validate_domain_rejects(domain: str) -> None:
    """Anything else raises ValidationError."""
    with pytest.raises(ValidationError):
        validate_domain(domain)


def test_write_list_get_remove_round_trip(tmp_path: Path) -> None:
    """Stored sites are listed, read back and removed."""
    store, journal = _store(tmp_path)
    root = tmp_path / "www" / "blog"
    entry = VHostEntry(domain="blog.test", path=store.path_for("blog.test"))

    path = store.write(entry, _render("blog.test", root, tmp_path / "certs"))

    assert path == tmp_path / "vhosts" / "blog.test.conf"
    assert path.stat().st_mode & 0o777 == 0o644
    listed = store.list()
    assert [item.domain for item in listed] == ["blog.test"]
    fetched = store.get("blog.test")
    assert fetched.document_root == root
    assert fetched.http_port == 80
    assert fetched.https_port == 443
    assert fetched.certificate == tmp_path / "certs" / "_wildcard.test.pem"
    assert fetched.certificate_key == tmp_path / "certs" / "_wildcard.test-key.pem"

    store.remove("blog.test")

    assert not path.exists()
    assert store.list() == []
    assert [step.name for step in journal] == ["vhost.write", "vhost.remove"]


def test_reserved_localhost_file_is_not_listed(tmp_path: Path) -> None:
    """The 00- prefixed default site never appears in listings."""
    store, _ = _store(tmp_path)
    vhosts = tmp_path / "vhosts"
    vhosts.mkdir()
    (vhosts / "00-localhost.conf").write_text("ServerName localhost\n", encoding="utf-8")
    (vhosts / "shop.test.conf").write_text(
        _render("shop.test", tmp_path / "shop", tmp_path / "certs"), encoding="utf-8"
    )
    (vhosts / "notes.txt").write_text("ignored\n", encoding="utf-8")

    assert [entry.domain for entry in store.list()] == ["shop.test"]


def test_write_refuses_to_overwrite(tmp_path: Path) -> None:
    """Existing vhost files are never replaced."""
    store, _ = _store(tmp_path)
    entry = VHostEntry(domain="blog.test", path=store.path_for("blog.test"))
    store.write(entry, "first\n")

    with pytest.raises(AlreadyExists):
        store.write(entry, "second\n")

    assert store.path_for("blog.test").read_text(encoding="utf-8") == "first\n"


def test_missing_site_raises_not_found(tmp_path: Path) -> None:
    """get() and remove() of an unknown site raise EntityNotFound."""
    store, _ = _store(tmp_path)

    with pytest.raises(EntityNotFound):
        store.get("ghost.test")
    with pytest.raises(EntityNotFound):
        store.remove("ghost.test")


def test_dry_run_write_and_remove_touch_nothing(tmp_path: Path) -> None:
    """Dry-run journals the writes and deletions it would perform."""
    store, journal = _store(tmp_path, dry_run=True)
    entry = VHostEntry(domain="blog.test", path=store.path_for("blog.test"))

    store.write(entry, "content\n")

    assert not (tmp_path / "vhosts").exists()
    assert journal.steps[-1].status is StepStatus.SKIPPED

    existing = tmp_path / "vhosts" / "shop.test.conf"
    existing.parent.mkdir()
    existing.write_text("ServerName shop.test\n", encoding="utf-8")
    store.remove("shop.test")

    assert existing.exists()


def test_parse_vhost_falls_back_to_file_name(tmp_path: Path) -> None:
    """A file without ServerName is identified by its name."""
    path = tmp_path / "legacy.test.conf"

    entry = parse_vhost(path, "<VirtualHost *:8080>\nDocumentRoot /srv/legacy\n</VirtualHost>\n")

    assert entry.domain == "legacy.test"
    assert entry.http_port == 8080
    assert entry.https_port is None
    assert entry.document_root == Path("/srv/legacy")
