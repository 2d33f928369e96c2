"""
context-bundler — agent handoff rendering

File: src/context_bundler/synthesis_plane/handoff.py
Last updated: 2026-02-15

Purpose
- Render a stored bundle as the Markdown brief handed to a work agent.

Rendering rules
- Templates are Jinja2 with ``StrictUndefined``: a template that references a
  variable outside ``HANDOFF_VARIABLES`` is rejected before rendering.
- Output uses ``\\n`` newlines only and ends with one trailing newline.
- The last line records the sha256 of everything above it, so a brief can be
  checked against the bundle it came from.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

from jinja2 import Environment, StrictUndefined, TemplateError, meta

from context_bundler.domain.models import BundleReceipt, BundleRecord, iso8601z
from context_bundler.utils.canonical import sha256_text

HANDOFF_VARIABLES: Final[frozenset[str]] = frozenset(
    {"bundle", "created_at", "receipt", "record", "ticket_lists"}
)
DIGEST_LINE_PREFIX: Final[str] = "<!-- handoff-sha256: "

DEFAULT_HANDOFF_TEMPLATE: Final[str] = """\
# Handoff: {{ bundle.ticket.title or record.work_item_id }}

- Work item: `{{ record.work_item_id }}`
- Role: `{{ record.role }}`
- Bundle: `{{ record.bundle_id }}` (version {{ record.version }})
- Created: {{ created_at }}
- Content checksum: `{{ record.content_checksum }}`
- Bundle checksum: `{{ record.bundle_checksum }}`
{%- if receipt is not none %}
- Receipt: `{{ receipt.receipt_id }}` ({{ receipt.budget.character_count }} of \
{{ receipt.budget.hard_limit }} characters)
{%- endif %}

## Ticket

{{ bundle.ticket.description or "_No description._" }}
{% for name, heading in ticket_lists %}
{%- set items = bundle.ticket[name] %}
{%- if items %}

### {{ heading }}
{% for item in items %}
- {{ item }}
{%- endfor %}
{%- endif %}
{%- endfor %}
{%- if bundle.recent_deltas %}

## Recent changes

Files touched: {{ bundle.recent_deltas.files_touched | join(", ") or "none" }}

```diff
{{ bundle.recent_deltas.summary }}
```
{%- endif %}
{%- if bundle.repo_context.entries %}

## Repository context

{{ bundle.repo_context.ordering_note }}
{% for entry in bundle.repo_context.entries %}
### `{{ entry.path }}`
{%- if entry.get("line_range") %} (lines {{ entry.line_range | join("-") }}){% endif %}

```
{{ entry.excerpt }}
```
{% endfor %}
{%- endif %}
{%- if bundle.relevant_artifacts %}

## Relevant artifacts
{% for artifact in bundle.relevant_artifacts %}
### {{ artifact.artifact_title }} (`{{ artifact.artifact_id }}`)

{{ artifact.summary }}
{% for fact in artifact.hard_facts %}
- {{ fact }}
{%- endfor %}
{% endfor %}
{%- endif %}
{%- if bundle.instructions %}

## Instructions
{% for instruction in bundle.instructions %}
### {{ instruction.title }}

{{ instruction.content_md | trim }}
{% endfor %}
{%- endif %}
"""

_TICKET_LISTS: Final[tuple[tuple[str, str], ...]] = (
    ("acceptance_criteria", "Acceptance criteria"),
    ("out_of_scope", "Out of scope"),
    ("definition_of_done", "Definition of done"),
)


class HandoffTemplateError(ValueError):
    """Raised when a handoff template is malformed or references unknown variables."""


@dataclass(frozen=True, slots=True)
class RenderedHandoff:
    bundle_id: str
    text: str
    sha256: str

    def to_dict(self) -> dict[str, str]:
        return {"bundle_id": self.bundle_id, "sha256": self.sha256, "text": self.text}


def render_handoff(
    record: BundleRecord,
    receipt: BundleReceipt | None = None,
    *,
    template: str = DEFAULT_HANDOFF_TEMPLATE,
) -> RenderedHandoff:
    environment = Environment(
        undefined=StrictUndefined,
        autoescape=False,
        keep_trailing_newline=True,
        newline_sequence="\n",
    )
    try:
        declared = meta.find_undeclared_variables(environment.parse(template))
    except TemplateError as exc:
        raise HandoffTemplateError(f"handoff template does not parse: {exc}") from exc
    unexpected = sorted(declared - HANDOFF_VARIABLES)
    if unexpected:
        raise HandoffTemplateError(
            "handoff template uses unknown variables: " + ", ".join(unexpected)
        )

    try:
        body = environment.from_string(template).render(
            bundle=_with_defaults(record.bundle_json),
            record=record,
            receipt=receipt,
            created_at=iso8601z(record.created_at),
            ticket_lists=_TICKET_LISTS,
        )
    except TemplateError as exc:
        raise HandoffTemplateError(f"handoff template failed to render: {exc}") from exc

    body = _normalize(body)
    digest = sha256_text(body)
    return RenderedHandoff(
        bundle_id=record.bundle_id,
        text=f"{body}{DIGEST_LINE_PREFIX}{digest} -->\n",
        sha256=digest,
    )


def verify_handoff_digest(text: str) -> bool:
    """True when the trailing digest line matches the text above it."""
    body, separator, tail = text.rstrip("\n").rpartition("\n")
    if not separator:
        return False
    if not tail.startswith(DIGEST_LINE_PREFIX) or not tail.endswith(" -->"):
        return False
    recorded = tail[len(DIGEST_LINE_PREFIX) : -len(" -->")]
    return sha256_text(body + "\n") == recorded


def _with_defaults(bundle: Mapping[str, object]) -> dict[str, object]:
    # Older or hand-made bundles may lack optional sections.
    ticket = bundle.get("ticket")
    ticket_map = dict(ticket) if isinstance(ticket, Mapping) else {}
    for key in ("title", "description"):
        ticket_map.setdefault(key, "")
    for name, _heading in _TICKET_LISTS:
        ticket_map.setdefault(name, [])
    repo_context = bundle.get("repo_context")
    return {
        **bundle,
        "ticket": ticket_map,
        "recent_deltas": bundle.get("recent_deltas"),
        "repo_context": repo_context if isinstance(repo_context, Mapping) else {"entries": []},
        "relevant_artifacts": bundle.get("relevant_artifacts") or [],
        "instructions": bundle.get("instructions") or [],
    }


def _normalize(text: str) -> str:
    lines = [line.rstrip() for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n")]
    return "\n".join(lines).strip("\n") + "\n"


__all__ = [
    "DEFAULT_HANDOFF_TEMPLATE",
    "HANDOFF_VARIABLES",
    "HandoffTemplateError",
    "RenderedHandoff",
    "render_handoff",
    "verify_handoff_digest",
]
