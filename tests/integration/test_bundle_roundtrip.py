"""
context-bundler — in-process bundle roundtrip

File: tests/integration/test_bundle_roundtrip.py
Last updated: 2026-02-16

Purpose
- Exercise every plane together over one state DB: requirements gate,
  instructions, pins, generation for each role, receipts, handoff rendering
  and cold-start checks after reopening the database.
"""

from __future__ import annotations

from context_bundler.constants import KNOWN_ROLES
from context_bundler.control_plane.bundle_service import BundleService
from context_bundler.domain.models import ContinuityVerdict
from context_bundler.persistence.state_db import StateDB
from context_bundler.synthesis_plane.bundle_builder import BuildError
from context_bundler.synthesis_plane.distillation import ExtractiveDistiller
from context_bundler.synthesis_plane.handoff import verify_handoff_digest

from tests import (
    REPO,
    WORK_ITEM,
    FakeChangeProvider,
    make_change_ref,
    make_request,
    make_service,
    seed_work_item,
)


def test_every_role_gets_an_independently_versioned_bundle(tmp_path) -> None:
    instructions_dir = tmp_path / "instructions"
    instructions_dir.mkdir()
    (instructions_dir / "all.md").write_text(
        "---\nalways_apply: true\n---\nKeep commits small.\n", encoding="utf-8"
    )
    service = make_service(tmp_path, change_provider=FakeChangeProvider())
    artifacts = seed_work_item(service, artifacts=5)
    service.import_instructions(REPO, instructions_dir)
    service.pin_artifact(WORK_ITEM, artifacts[-1].artifact_id)

    receipts = {}
    for role in KNOWN_ROLES:
        outcome = service.generate_bundle(make_request(role=role, change_ref=make_change_ref()))
        assert not isinstance(outcome, BuildError), outcome
        assert outcome.record.version == 1
        assert artifacts[-1].artifact_id in outcome.receipt.artifact_references
        assert outcome.degraded == ()
        receipts[role] = outcome.receipt

    first_role = KNOWN_ROLES[0]
    again = service.generate_bundle(make_request(role=first_role, change_ref=make_change_ref()))
    assert not isinstance(again, BuildError)
    assert again.record.version == 2
    versions = service.bundles.list_versions(REPO, WORK_ITEM, first_role)
    assert [item.version for item in versions] == [2, 1]

    for role, receipt in receipts.items():
        report = service.verify_continuity(receipt_id=receipt.receipt_id)
        assert report.passed, (role, report.errors)
        rendered = service.render_handoff(receipt.bundle_id)
        assert "Keep commits small." in rendered.text
        assert verify_handoff_digest(rendered.text)


def test_cold_start_after_reopening_the_state_db(tmp_path) -> None:
    first = make_service(tmp_path, change_provider=FakeChangeProvider())
    seed_work_item(first)
    generated = first.generate_bundle(make_request(change_ref=make_change_ref()))
    assert not isinstance(generated, BuildError)

    reopened = BundleService(
        db=StateDB(tmp_path / "state.sqlite3"),
        change_provider=FakeChangeProvider(),
        distiller=ExtractiveDistiller(),
    )
    check = reopened.run_cold_start_check()

    assert check.verdict is ContinuityVerdict.PASS
    assert check.bundle_id == generated.record.bundle_id
    assert reopened.list_continuity_checks()[0].check_id == check.check_id
    assert reopened.get_receipt(bundle_id=generated.record.bundle_id) == generated.receipt
