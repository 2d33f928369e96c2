from __future__ import annotations

import pytest

from context_bundler.synthesis_plane.bundle_builder import BuildError
from context_bundler.synthesis_plane.handoff import (
    DIGEST_LINE_PREFIX,
    HandoffTemplateError,
    render_handoff,
    verify_handoff_digest,
)

from tests import FakeChangeProvider, make_change_ref, make_request, make_service, seed_work_item


@pytest.fixture
def generated(tmp_path):
    service = make_service(tmp_path, change_provider=FakeChangeProvider())
    seed_work_item(service)
    outcome = service.generate_bundle(make_request(change_ref=make_change_ref()))
    assert not isinstance(outcome, BuildError)
    return outcome


def test_default_template_renders_every_section(generated) -> None:
    rendered = render_handoff(generated.record, generated.receipt)
    text = rendered.text

    assert text.startswith("# Handoff: Frame parser hardening\n")
    for heading in (
        "## Ticket",
        "### Acceptance criteria",
        "### Out of scope",
        "## Recent changes",
        "## Repository context",
        "### `src/parser.py` (lines 10-13)",
        "## Relevant artifacts",
    ):
        assert heading in text
    assert "### Definition of done" not in text
    assert "## Instructions" not in text
    assert f"- Receipt: `{generated.receipt.receipt_id}`" in text
    assert text.endswith(f"{DIGEST_LINE_PREFIX}{rendered.sha256} -->\n")
    assert "\r" not in text
    assert verify_handoff_digest(text)


def test_rendering_is_deterministic_and_receipt_is_optional(generated) -> None:
    first = render_handoff(generated.record, generated.receipt)
    second = render_handoff(generated.record, generated.receipt)
    bare = render_handoff(generated.record)

    assert first == second
    assert "- Receipt:" not in bare.text
    assert bare.sha256 != first.sha256


def test_custom_template(generated) -> None:
    rendered = render_handoff(
        generated.record, template="Bundle {{ record.bundle_id }} for {{ record.role }}\r\n"
    )

    assert rendered.text.splitlines()[0] == (
        f"Bundle {generated.record.bundle_id} for {generated.record.role}"
    )
    assert verify_handoff_digest(rendered.text)


def test_unknown_variables_are_rejected(generated) -> None:
    with pytest.raises(HandoffTemplateError, match="unknown variables: secrets"):
        render_handoff(generated.record, template="{{ secrets.token }}")


def test_malformed_templates_are_rejected(generated) -> None:
    with pytest.raises(HandoffTemplateError, match="does not parse"):
        render_handoff(generated.record, template="{% if %}")
    with pytest.raises(HandoffTemplateError, match="failed to render"):
        render_handoff(generated.record, template="{{ record.no_such_field }}")


def test_tampered_handoff_fails_verification(generated) -> None:
    text = render_handoff(generated.record, generated.receipt).text

    assert not verify_handoff_digest(text.replace("Frame parser", "Frame printer", 1))
    assert not verify_handoff_digest("no digest here")
    assert not verify_handoff_digest(text.rsplit("\n", 2)[0])
