from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import timedelta

import pytest

from context_bundler.domain.ids import IdKind
from context_bundler.domain.models import (
    AgentRun,
    BudgetSnapshot,
    BundleReceipt,
    BundleRecord,
    ContinuityCheckRecord,
    ContinuityVerdict,
    DistilledArtifact,
    FailureType,
    Instruction,
    RequirementsFailure,
    ValidationStatus,
)
from context_bundler.persistence.repositories import (
    AgentRunRepo,
    ArtifactRepo,
    BundleRepo,
    ContinuityCheckRepo,
    InstructionRepo,
    ManifestRepo,
    PinRepo,
    RequirementsDocumentRepo,
)
from context_bundler.persistence.state_db import StateDB
from context_bundler.utils.canonical import checksum

from tests import BASE_TS, REPO, WORK_ITEM, fixed_now, make_artifact, make_id, make_red_json


@pytest.fixture
def db(tmp_path) -> StateDB:
    return StateDB(tmp_path / "state.sqlite3")


def _compose(version: int, *, seed: int = 0):
    def compose(allocated: int) -> tuple[BundleRecord, BundleReceipt]:
        bundle_id = make_id(IdKind.BUNDLE, seed + allocated)
        bundle = {"meta": {"ticket_id": WORK_ITEM, "content_checksum": "c" * 64}}
        record = BundleRecord(
            bundle_id=bundle_id,
            repo_full_name=REPO,
            work_item_id=WORK_ITEM,
            role="qa-agent",
            version=allocated,
            bundle_json=bundle,
            content_checksum="c" * 64,
            bundle_checksum="d" * 64,
            created_at=fixed_now(allocated),
        )
        receipt = BundleReceipt(
            receipt_id=make_id(IdKind.RECEIPT, seed + allocated),
            bundle_id=bundle_id,
            work_item_id=WORK_ITEM,
            role="qa-agent",
            content_checksum="c" * 64,
            bundle_checksum="d" * 64,
            section_metrics={"meta": 10},
            total_characters=10,
            budget=BudgetSnapshot(character_count=40, hard_limit=200_000, role="qa-agent"),
            created_at=fixed_now(allocated),
        )
        assert allocated == version
        return record, receipt

    return compose


def test_requirements_versions_increment_per_work_item(db: StateDB) -> None:
    repo = RequirementsDocumentRepo(db)
    first = repo.insert_version(REPO, WORK_ITEM, make_red_json(), created_at=BASE_TS)
    second = repo.insert_version(REPO, WORK_ITEM, make_red_json(title="Second"))
    other = repo.insert_version(REPO, "W-202", make_red_json())

    assert (first.version, second.version, other.version) == (1, 2, 1)
    assert first.validation_status is ValidationStatus.PENDING
    assert first.content_checksum == checksum(make_red_json())
    assert first.created_at == BASE_TS
    assert [doc.version for doc in repo.list_versions(REPO, WORK_ITEM)] == [2, 1]
    assert repo.get_version(REPO, WORK_ITEM, 1) == first


def test_latest_valid_skips_invalid_and_pending_versions(db: StateDB) -> None:
    repo = RequirementsDocumentRepo(db)
    valid = repo.insert_version(REPO, WORK_ITEM, make_red_json(), status=ValidationStatus.VALID)
    failure = RequirementsFailure(
        type=FailureType.COUNT,
        field="edge_cases",
        message="edge_cases: expected >= 8 items, found 1",
        expected=8,
        found=1,
    )
    invalid = repo.insert_version(
        REPO,
        WORK_ITEM,
        make_red_json(valid=False),
        status=ValidationStatus.INVALID,
        failures=[failure],
    )
    repo.insert_version(REPO, WORK_ITEM, make_red_json())

    assert repo.get_latest_valid(REPO, WORK_ITEM) == valid
    assert invalid.validation_failures == (failure,)
    assert repo.get_latest_valid(REPO, "W-unknown") is None


def test_record_validation_appends_a_newer_verdict(db: StateDB) -> None:
    repo = RequirementsDocumentRepo(db)
    pending = repo.insert_version(REPO, WORK_ITEM, make_red_json())

    updated = repo.record_validation(
        pending.red_id, ValidationStatus.VALID, (), validated_at=fixed_now(5)
    )

    assert updated.validation_status is ValidationStatus.VALID
    assert updated.validated_at == fixed_now(5)
    assert updated.red_json == pending.red_json
    assert repo.get_latest_valid(REPO, WORK_ITEM) == updated


def test_manifest_versions_are_per_schema(db: StateDB) -> None:
    repo = ManifestRepo(db)
    v1 = repo.add(REPO, {"project_id": "p", "project_manifest": {"n": 1}}, created_at=BASE_TS)
    v2 = repo.add(REPO, {"project_id": "p", "project_manifest": {"n": 2}}, created_at=BASE_TS)
    other = repo.add(REPO, {"project_id": "p"}, schema_version="v1", created_at=BASE_TS)

    assert (v1.version, v2.version, other.version) == (1, 2, 1)
    assert repo.get_latest(REPO, "v0") == v2
    assert repo.get_version(REPO, 1, "v0") == v1
    assert repo.get_version(REPO, 3, "v0") is None
    assert v2.project_manifest == {"n": 2}
    assert v2.project_id == "p"
    assert other.project_manifest is None


def test_artifacts_list_newest_first_and_cache_distillations(db: StateDB) -> None:
    repo = ArtifactRepo(db)
    old = repo.add(make_artifact(5))
    new = repo.add(make_artifact(1))
    undated = repo.add(replace(make_artifact(2), created_at=None))
    repo.add(make_artifact(3, work_item_id="W-other"))

    listed = repo.list_for_work_item(WORK_ITEM)
    assert [item.artifact_id for item in listed] == [
        new.artifact_id,
        old.artifact_id,
        undated.artifact_id,
    ]
    assert [item.artifact_id for item in repo.list_for_work_item(WORK_ITEM, limit=1)] == [
        new.artifact_id
    ]

    distilled = DistilledArtifact(summary="s", hard_facts=("f",), keywords=("k",))
    repo.record_distillation(old.artifact_id, distilled)
    assert repo.get(old.artifact_id).distilled == distilled
    with pytest.raises(LookupError):
        repo.record_distillation("art-missing", distilled)

    many = repo.get_many([new.artifact_id, "art-missing"])
    assert list(many) == [new.artifact_id]
    assert repo.get_many([]) == {}


def test_artifact_paging_is_validated(db: StateDB) -> None:
    repo = ArtifactRepo(db)
    with pytest.raises(ValueError, match="limit"):
        repo.list_for_work_item(WORK_ITEM, limit=0)
    with pytest.raises(ValueError, match="offset"):
        repo.list_for_work_item(WORK_ITEM, offset=-1)


def test_instruction_upsert_replaces_by_filename(db: StateDB) -> None:
    repo = InstructionRepo(db)
    base = Instruction(
        repo_full_name=REPO,
        topic_id="testing",
        filename="testing.md",
        title="Testing",
        content_md="Use pytest.",
        agent_types=("qa",),
    )
    repo.upsert(base)
    repo.upsert(
        Instruction(
            repo_full_name=REPO,
            topic_id="style",
            filename="a-style.md",
            title="Style",
            content_md="Run ruff.",
            always_apply=True,
        )
    )
    repo.upsert(
        Instruction(
            repo_full_name=REPO,
            topic_id="testing",
            filename="testing.md",
            title="Testing v2",
            content_md="Use pytest -q.",
            agent_types=("qa", "implementation"),
        )
    )

    listed = repo.list_for_repo(REPO)
    assert [item.filename for item in listed] == ["a-style.md", "testing.md"]
    assert listed[0].always_apply is True
    assert listed[1].title == "Testing v2"
    assert listed[1].agent_types == ("qa", "implementation")
    assert repo.list_for_repo("other/repo") == []


def test_agent_runs_filter_by_type_newest_first(db: StateDB) -> None:
    repo = AgentRunRepo(db)
    for seed, agent_type in enumerate(["qa", "implementation", "qa"]):
        repo.add(
            AgentRun(
                run_id=f"run-{seed}",
                work_item_id=WORK_ITEM,
                agent_type=agent_type,
                status="completed",
                created_at=fixed_now(seed),
            )
        )

    qa_runs = repo.list_for_work_item(WORK_ITEM, agent_type="qa")
    assert [run.run_id for run in qa_runs] == ["run-2", "run-0"]
    assert len(repo.list_for_work_item(WORK_ITEM)) == 3


def test_pins_are_idempotent_and_role_scoped(db: StateDB) -> None:
    repo = PinRepo(db)
    pin, created = repo.pin(WORK_ITEM, "art-1", role="qa-agent")
    again, created_again = repo.pin(WORK_ITEM, "art-1", role="qa-agent")
    repo.pin(WORK_ITEM, "art-2")

    assert created is True
    assert created_again is False
    assert again.pin_id == pin.pin_id
    assert repo.pinned_artifact_ids(WORK_ITEM, "qa-agent") == {"art-1", "art-2"}
    assert repo.pinned_artifact_ids(WORK_ITEM, "implementation-agent") == {"art-2"}
    pins = repo.list_for_work_item(WORK_ITEM)
    assert {(item.artifact_id, item.role) for item in pins} == {
        ("art-1", "qa-agent"),
        ("art-2", None),
    }

    assert repo.unpin(WORK_ITEM, "art-1", role="implementation-agent") == 0
    assert repo.unpin(WORK_ITEM, "art-1", role="qa-agent") == 1
    assert repo.unpin(WORK_ITEM, "art-2") == 1
    assert repo.pinned_artifact_ids(WORK_ITEM, "qa-agent") == frozenset()


def test_bundle_versions_and_receipts(db: StateDB) -> None:
    repo = BundleRepo(db)
    first, first_receipt = repo.insert_next_version(REPO, WORK_ITEM, "qa-agent", _compose(1))
    second, _ = repo.insert_next_version(REPO, WORK_ITEM, "qa-agent", _compose(2))

    assert (first.version, second.version) == (1, 2)
    assert repo.get(first.bundle_id) == first
    assert repo.get_receipt(first_receipt.receipt_id) == first_receipt
    assert repo.get_receipt_for_bundle(first.bundle_id) == first_receipt
    assert repo.get_latest(work_item_id=WORK_ITEM, role="qa-agent") == second
    assert repo.get_latest(role="implementation-agent") is None
    assert [item.version for item in repo.list_versions(REPO, WORK_ITEM, "qa-agent")] == [2, 1]


def test_bundle_version_collision_propagates_integrity_error(db: StateDB) -> None:
    repo = BundleRepo(db)
    repo.insert_next_version(REPO, WORK_ITEM, "qa-agent", _compose(1))

    def stale(allocated: int) -> tuple[BundleRecord, BundleReceipt]:
        record, receipt = _compose(allocated, seed=100)(allocated)
        # Pretend another writer already took this version.
        return replace(record, version=1), receipt

    with pytest.raises(sqlite3.IntegrityError):
        repo.insert_next_version(REPO, WORK_ITEM, "qa-agent", stale)
    assert len(repo.list_versions(REPO, WORK_ITEM, "qa-agent")) == 1


def test_continuity_checks_list_recent_first(db: StateDB) -> None:
    repo = ContinuityCheckRepo(db)
    for seed in range(3):
        repo.add(
            ContinuityCheckRecord(
                check_id=f"chk-{seed}",
                bundle_id=None,
                run_at=BASE_TS + timedelta(minutes=seed),
                verdict=ContinuityVerdict.PASS,
                summary="ok",
            )
        )

    recent = repo.list_recent(limit=2)
    assert [check.check_id for check in recent] == ["chk-2", "chk-1"]
    assert [check.check_id for check in repo.list_recent(limit=2, offset=2)] == ["chk-0"]
