"""Tests for certificate naming, issuance and permission enforcement."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from bampctl.certificates import (
    CertificateProvisioner,
    CertificateStore,
    file_stem,
    read_expiry,
    subjects_for,
    wildcard_covers,
)
from bampctl.errors import PreconditionError
from bampctl.policy import ActionJournal, ReconciliationPolicy, StepStatus
from bampctl.providers import MkcertProvider

from conftest import FakeRunner, write_certificate


def _provisioner(
    tmp_path: Path,
    runner: FakeRunner,
    *,
    dry_run: bool = False,
) -> tuple[CertificateProvisioner, ActionJournal]:
    journal = ActionJournal()
    provisioner = CertificateProvisioner(
        CertificateStore(tmp_path / "certs"),
        MkcertProvider(runner=runner),
        ReconciliationPolicy(dry_run=dry_run),
        journal,
        suffix="test",
    )
    return provisioner, journal


@pytest.mark.parametrize(
    ("domain", "covered"),
    [
        ("blog.test", True),
        ("test", True),
        ("BLOG.TEST", True),
        ("api.blog.test", False),
        ("blog.local", False),
        ("blogtest", False),
    ],
)
def test_wildcard_covers_single_label(domain: str, covered: bool) -> None:
    """The wildcard only matches one label before the suffix."""
    assert wildcard_covers("test", domain) is covered


def test_subjects_and_file_stems() -> None:
    """Subjects expand per kind and wildcard files use the _wildcard stem."""
    assert subjects_for("localhost") == ["localhost", "127.0.0.1", "::1"]
    assert subjects_for("*.test") == ["*.test", "test"]
    assert subjects_for("api.blog.test") == ["api.blog.test", "www.api.blog.test"]
    assert file_stem("*.test") == "_wildcard.test"
    assert file_stem("blog.test") == "blog.test"


def test_read_expiry_returns_not_after(tmp_path: Path) -> None:
    """Expiry is read from the PEM certificate."""
    cert = tmp_path / "site.pem"
    expected = write_certificate(cert, tmp_path / "site-key.pem", days=30)

    expiry = read_expiry(cert)

    assert isinstance(expiry, datetime)
    assert expiry == expected


def test_read_expiry_ignores_garbage(tmp_path: Path) -> None:
    """Unreadable certificates yield None."""
    cert = tmp_path / "broken.pem"
    cert.write_text("not a certificate", encoding="utf-8")

    assert read_expiry(cert) is None
    assert read_expiry(tmp_path / "missing.pem") is None


def test_ensure_certificate_issues_and_tightens_key(tmp_path: Path) -> None:
    """mkcert output is renamed per subject and the key set to 0600."""
    runner = FakeRunner(tmp_path)
    provisioner, journal = _provisioner(tmp_path, runner)

    pair = provisioner.ensure_certificate("*.test")

    assert pair.certificate == tmp_path / "certs" / "_wildcard.test.pem"
    assert pair.key == tmp_path / "certs" / "_wildcard.test-key.pem"
    assert pair.certificate.stat().st_mode & 0o777 == 0o644
    assert pair.key.stat().st_mode & 0o777 == 0o600
    assert pair.not_valid_after is not None
    issue = runner.commands("mkcert")[-1]
    assert issue[-2:] == ["*.test", "test"]
    assert "certificate.permissions" in [step.name for step in journal]


def test_existing_pair_is_reused_without_mkcert(tmp_path: Path) -> None:
    """A present pair is a no-op and never calls mkcert."""
    runner = FakeRunner(tmp_path)
    runner.mkcert_available = False
    certs = tmp_path / "certs"
    write_certificate(certs / "blog.test.pem", certs / "blog.test-key.pem", key_mode=0o600)
    provisioner, journal = _provisioner(tmp_path, runner)

    pair = provisioner.ensure_certificate("blog.test")

    assert pair.exists()
    assert runner.commands("mkcert") == []
    assert journal.steps[0].status is StepStatus.NOOP


def test_resolve_prefers_covering_wildcard(tmp_path: Path) -> None:
    """Single-label sites reuse the wildcard, deeper names get their own pair."""
    runner = FakeRunner(tmp_path)
    certs = tmp_path / "certs"
    write_certificate(
        certs / "_wildcard.test.pem",
        certs / "_wildcard.test-key.pem",
        subjects=("*.test", "test"),
        key_mode=0o600,
    )
    provisioner, _ = _provisioner(tmp_path, runner)

    shared = provisioner.resolve_for_domain("blog.test")
    dedicated = provisioner.resolve_for_domain("api.blog.test")

    assert shared.certificate.name == "_wildcard.test.pem"
    assert dedicated.certificate.name == "api.blog.test.pem"
    assert len([call for call in runner.commands("mkcert") if "-cert-file" in call]) == 1


def test_resolve_reuses_wildcard_for_other_suffix(tmp_path: Path) -> None:
    """Any wildcard pair in the directory is reused when it covers the domain."""
    runner = FakeRunner(tmp_path)
    certs = tmp_path / "certs"
    write_certificate(
        certs / "_wildcard.local.pem",
        certs / "_wildcard.local-key.pem",
        subjects=("*.local", "local"),
        key_mode=0o600,
    )
    provisioner, journal = _provisioner(tmp_path, runner)

    pair = provisioner.resolve_for_domain("shop.local")

    assert pair.certificate.name == "_wildcard.local.pem"
    assert not (certs / "shop.local.pem").exists()
    assert runner.commands("mkcert") == []
    assert journal.steps[0].status is StepStatus.NOOP


def test_missing_mkcert_is_a_precondition_failure(tmp_path: Path) -> None:
    """Issuing without mkcert raises before anything is written."""
    runner = FakeRunner(tmp_path)
    runner.mkcert_available = False
    provisioner, _ = _provisioner(tmp_path, runner)

    with pytest.raises(PreconditionError) as excinfo:
        provisioner.ensure_certificate("blog.test")

    assert "brew install mkcert" in (excinfo.value.remediation or "")
    assert not (tmp_path / "certs").exists()


def test_dry_run_plans_issue_and_chmod(tmp_path: Path) -> None:
    """Dry-run neither issues certificates nor changes modes."""
    runner = FakeRunner(tmp_path)
    certs = tmp_path / "certs"
    write_certificate(certs / "shop.test.pem", certs / "shop.test-key.pem", key_mode=0o644)
    provisioner, journal = _provisioner(tmp_path, runner, dry_run=True)

    provisioner.ensure_certificate("new.test")
    provisioner.ensure_certificate("shop.test")

    assert not (certs / "new.test.pem").exists()
    assert (certs / "shop.test-key.pem").stat().st_mode & 0o777 == 0o644
    planned = [step.detail for step in journal if step.status is StepStatus.SKIPPED]
    assert any("issue certificate" in str(detail) for detail in planned)
    assert any("chmod 0600" in str(detail) for detail in planned)


def test_store_lists_complete_pairs(tmp_path: Path) -> None:
    """Only pairs with both files are listed."""
    certs = tmp_path / "certs"
    write_certificate(certs / "_wildcard.test.pem", certs / "_wildcard.test-key.pem")
    write_certificate(certs / "orphan.test.pem", certs / "orphan.test-key.pem")
    (certs / "orphan.test-key.pem").unlink()

    subjects = [pair.subject for pair in CertificateStore(certs).list()]

    assert subjects == ["*.test"]
