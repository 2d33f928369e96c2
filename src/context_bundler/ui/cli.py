"""Command-line interface router for context-bundler."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from context_bundler.config.loader import ConfigLoadError, dump_effective_config, load_config
from context_bundler.config.schema import ConfigValidationError
from context_bundler.control_plane.budgets import UnknownRoleError
from context_bundler.control_plane.bundle_service import BundleService, NotFoundError
from context_bundler.domain.ids import generate_ulid
from context_bundler.domain.models import ChangeRef, iso8601z
from context_bundler.integration_plane.sources import (
    ChangeRequestProvider,
    Distiller,
    GitChangeProvider,
    NullDistiller,
)
from context_bundler.observability.logging import LoggingHandle, setup_logging, shutdown_logging
from context_bundler.persistence.repositories import RequirementsVersionConflictError
from context_bundler.synthesis_plane.bundle_builder import (
    BuildError,
    BuildErrorKind,
    BuildRequest,
)
from context_bundler.synthesis_plane.distillation import ExtractiveDistiller
from context_bundler.synthesis_plane.handoff import HandoffTemplateError
from context_bundler.ui.render import CLIRenderer, create_renderer

EXIT_OK: Final[int] = 0
EXIT_REJECTED: Final[int] = 1
EXIT_CONFIG: Final[int] = 2
EXIT_INTERNAL: Final[int] = 4

DISTILLERS: Final[tuple[str, ...]] = ("extractive", "none")


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = EXIT_REJECTED

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all bundler commands."""

    parser = argparse.ArgumentParser(
        prog="context-bundler",
        description=(
            "context-bundler — deterministic, budgeted context bundles for work agents.\n\n"
            "Common workflows:\n"
            "  context-bundler red-insert --repo o/r --work-item W-1 --file red.json\n"
            "  context-bundler generate --repo o/r --work-item W-1 --role qa-agent\n"
            "  context-bundler verify --bundle-id bnd-...\n"
            "  context-bundler cold-start-check\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to bundler TOML config (default: ./bundler.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument("--state-db", default=None, help="Override paths.state_db.")
    common.add_argument("--log-dir", default=None, help="Override observability.log_dir.")
    common.add_argument(
        "--json", action="store_true", default=False, help="Emit deterministic JSON output."
    )
    common.add_argument("--verbose", "-v", action="store_true", default=False)

    target = argparse.ArgumentParser(add_help=False)
    target.add_argument("--repo", dest="repo_full_name", required=True, help="owner/name")
    target.add_argument("--work-item", dest="work_item_id", required=True)
    target.add_argument("--role", required=True, help="Agent role the bundle is for.")

    build = argparse.ArgumentParser(add_help=False, parents=[target])
    build.add_argument(
        "--artifact",
        dest="artifact_ids",
        action="append",
        default=None,
        help="Select exactly this artifact (repeatable; order is kept).",
    )
    build.add_argument("--query", default="", help="Retrieval query used for scoring.")
    build.add_argument("--max-artifacts", type=int, default=None)
    build.add_argument("--base-sha", default=None, help="Change request base commit.")
    build.add_argument("--head-sha", default=None, help="Change request head commit.")
    build.add_argument("--pr-url", default=None)
    build.add_argument("--pr-number", type=int, default=None)
    build.add_argument(
        "--git-dir", default=".", help="Local clone used to diff base..head (default: .)."
    )
    build.add_argument("--distiller", choices=DISTILLERS, default="extractive")

    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser(
        "generate", parents=[common, build], help="Build and persist the next bundle version"
    )
    generate.set_defaults(handler=_cmd_generate)

    preview = subparsers.add_parser(
        "preview", parents=[common, build], help="Build a bundle without persisting it"
    )
    preview.add_argument(
        "--include-bundle", action="store_true", help="Print the bundle body in text mode."
    )
    preview.set_defaults(handler=_cmd_preview)

    for name, handler, help_text in (
        ("receipt", _cmd_receipt, "Show a bundle receipt"),
        ("verify", _cmd_verify, "Rebuild a bundle from its receipt and compare checksums"),
    ):
        command = subparsers.add_parser(name, parents=[common], help=help_text)
        lookup = command.add_mutually_exclusive_group(required=True)
        lookup.add_argument("--receipt-id", default=None)
        lookup.add_argument("--bundle-id", default=None)
        command.set_defaults(handler=handler)

    rank = subparsers.add_parser(
        "rank", parents=[common, target], help="Score candidate artifacts for a bundle"
    )
    rank.add_argument("--query", default="")
    rank.add_argument("--max-artifacts", type=int, default=None)
    rank.set_defaults(handler=_cmd_rank)

    for name, handler, help_text in (
        ("pin", _cmd_pin, "Pin an artifact so it is always selected"),
        ("unpin", _cmd_unpin, "Remove a pin (every role's pin when --role is omitted)"),
    ):
        command = subparsers.add_parser(name, parents=[common], help=help_text)
        command.add_argument("--work-item", dest="work_item_id", required=True)
        command.add_argument("--artifact", dest="artifact_id", required=True)
        command.add_argument("--role", default=None, help="Limit the pin to one role.")
        command.set_defaults(handler=handler)

    red_insert = subparsers.add_parser(
        "red-insert", parents=[common], help="Store and validate a requirements document"
    )
    red_insert.add_argument("--repo", dest="repo_full_name", required=True)
    red_insert.add_argument("--work-item", dest="work_item_id", required=True)
    red_insert.add_argument("--file", required=True, help="RED JSON file, or - for stdin.")
    red_insert.set_defaults(handler=_cmd_red_insert)

    red_validate = subparsers.add_parser(
        "red-validate", parents=[common], help="Re-run the quality gate on a stored RED"
    )
    red_validate.add_argument("--red-id", required=True)
    red_validate.set_defaults(handler=_cmd_red_validate)

    import_instructions = subparsers.add_parser(
        "import-instructions", parents=[common], help="Load instruction files into the state DB"
    )
    import_instructions.add_argument("--repo", dest="repo_full_name", required=True)
    import_instructions.add_argument(
        "--dir", dest="directory", default=None, help="Default: paths.instructions_dir."
    )
    import_instructions.set_defaults(handler=_cmd_import_instructions)

    render = subparsers.add_parser(
        "render", parents=[common], help="Render a stored bundle as a Markdown handoff"
    )
    render.add_argument("--bundle-id", required=True)
    render.add_argument("--output", default=None, help="Write to a file instead of stdout.")
    render.set_defaults(handler=_cmd_render)

    cold_start = subparsers.add_parser(
        "cold-start-check", parents=[common], help="Record a rebuild-from-receipt check"
    )
    cold_start.add_argument("--bundle-id", default=None)
    cold_start.add_argument("--repo", dest="repo_full_name", default=None)
    cold_start.add_argument("--work-item", dest="work_item_id", default=None)
    cold_start.add_argument("--role", default=None)
    cold_start.add_argument(
        "--list", dest="list_checks", action="store_true", help="List recent checks instead."
    )
    cold_start.add_argument("--limit", type=int, default=20)
    cold_start.set_defaults(handler=_cmd_cold_start_check)

    config = subparsers.add_parser(
        "config", parents=[common], help="Print the effective (redacted) configuration"
    )
    config.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_CONFIG

    handle: LoggingHandle | None = None
    try:
        config = _load_effective_config(namespace)
        handle = setup_logging(config.get("observability"), run_id=generate_ulid())
        result = handler(namespace, config)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except (NotFoundError, UnknownRoleError, RequirementsVersionConflictError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_REJECTED
    finally:
        if handle is not None:
            shutdown_logging()
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_generate(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = _service(config, args)
    outcome = service.generate_bundle(_build_request(args))
    renderer = _get_renderer(args)
    if isinstance(outcome, BuildError):
        return _emit_build_error(args, renderer, outcome)

    payload = outcome.to_dict()
    if _flag(args, "json"):
        renderer.json({"command": "generate", **payload})
        return EXIT_OK

    renderer.ok(f"bundle {outcome.record.bundle_id} (version {outcome.record.version})")
    renderer.kv("Receipt", outcome.receipt.receipt_id)
    renderer.kv("Content checksum", outcome.record.content_checksum)
    renderer.budget(outcome.budget.to_dict())
    renderer.degraded([reason.to_dict() for reason in outcome.degraded])
    return EXIT_OK


def _cmd_preview(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = _service(config, args)
    outcome = service.preview_bundle(_build_request(args))
    renderer = _get_renderer(args)
    if isinstance(outcome, BuildError):
        return _emit_build_error(args, renderer, outcome)

    payload = outcome.to_dict()
    if _flag(args, "json"):
        renderer.json({"command": "preview", **payload})
        return EXIT_OK

    renderer.kv("Content checksum", outcome.result.content_checksum)
    renderer.budget(outcome.budget.to_dict())
    metrics = outcome.result.section_metrics
    renderer.table(
        ["section", "characters"],
        [[name, str(metrics[name])] for name in sorted(metrics)],
        title="Sections:",
    )
    renderer.degraded([reason.to_dict() for reason in outcome.result.degraded])
    if _flag(args, "include_bundle"):
        renderer.section("Bundle:")
        renderer.text(json.dumps(outcome.result.bundle, indent=2, sort_keys=True))
    return EXIT_OK


def _cmd_receipt(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = _service(config, args)
    receipt = service.get_receipt(receipt_id=args.receipt_id, bundle_id=args.bundle_id)
    renderer = _get_renderer(args)
    if _flag(args, "json"):
        renderer.json({"command": "receipt", "receipt": receipt.to_dict()})
        return EXIT_OK

    renderer.kv("Receipt", receipt.receipt_id)
    renderer.kv("Bundle", receipt.bundle_id)
    renderer.kv("Work item", f"{receipt.work_item_id} ({receipt.role})")
    renderer.kv("Content checksum", receipt.content_checksum)
    renderer.kv("Bundle checksum", receipt.bundle_checksum)
    renderer.kv("Characters", f"{receipt.budget.character_count} / {receipt.budget.hard_limit}")
    if receipt.red_reference is not None:
        renderer.kv(
            "RED", f"{receipt.red_reference.red_id} v{receipt.red_reference.version}"
        )
    if receipt.integration_manifest_reference is not None:
        reference = receipt.integration_manifest_reference
        renderer.kv("Manifest", f"{reference.manifest_id} v{reference.version}")
    renderer.messages("Artifacts:", list(receipt.artifact_references))
    return EXIT_OK


def _cmd_verify(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = _service(config, args)
    report = service.verify_continuity(receipt_id=args.receipt_id, bundle_id=args.bundle_id)
    exit_code = EXIT_OK if report.passed else EXIT_REJECTED
    renderer = _get_renderer(args)
    if _flag(args, "json"):
        renderer.json({"command": "verify", "report": report.to_dict()})
        return exit_code

    label = f"bundle {report.bundle_id} rebuilt from receipt {report.receipt_id}"
    if report.passed:
        renderer.ok(label)
    else:
        renderer.fail(label)
    renderer.messages("Errors:", list(report.errors))
    renderer.messages("Warnings:", list(report.warnings))
    renderer.kv("Run continuity", report.run_id_continuity.explanation)
    return exit_code


def _cmd_rank(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = _service(config, args)
    ranking = service.rank_artifacts(
        args.repo_full_name,
        args.work_item_id,
        args.role,
        query=args.query,
        max_artifacts=args.max_artifacts,
    )
    renderer = _get_renderer(args)
    if isinstance(ranking, BuildError):
        return _emit_build_error(args, renderer, ranking)
    entries = [item.to_dict() for item in ranking]
    if _flag(args, "json"):
        renderer.json({"command": "rank", "ranking": entries})
    else:
        renderer.ranking(entries)
    return EXIT_OK


def _cmd_pin(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = _service(config, args)
    result = service.pin_artifact(args.work_item_id, args.artifact_id, role=args.role)
    return _emit_simple(args, "pin", result.to_dict(), f"{result.artifact_id}: {result.status}")


def _cmd_unpin(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = _service(config, args)
    result = service.unpin_artifact(args.work_item_id, args.artifact_id, role=args.role)
    return _emit_simple(args, "unpin", result.to_dict(), f"{result.artifact_id}: {result.status}")


def _cmd_red_insert(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    red_json = _read_json_object(args.file)
    service = _service(config, args)
    outcome = service.insert_requirements_document(
        args.repo_full_name, args.work_item_id, red_json
    )
    return _emit_requirements(args, "red-insert", outcome.to_dict())


def _cmd_red_validate(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = _service(config, args)
    outcome = service.validate_requirements_document(args.red_id)
    return _emit_requirements(args, "red-validate", outcome.to_dict())


def _cmd_import_instructions(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = _service(config, args)
    imported = service.import_instructions(args.repo_full_name, args.directory)
    payload = imported.to_dict()
    return _emit_simple(
        args,
        "import-instructions",
        payload,
        f"imported {payload['count']} instruction file(s) for {args.repo_full_name}",
    )


def _cmd_render(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = _service(config, args)
    try:
        rendered = service.render_handoff(args.bundle_id)
    except HandoffTemplateError as exc:
        raise CLIError(str(exc)) from exc

    renderer = _get_renderer(args)
    if args.output:
        output = Path(args.output).expanduser()
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(rendered.text, encoding="utf-8", newline="\n")
        if _flag(args, "json"):
            renderer.json(
                {
                    "command": "render",
                    "bundle_id": rendered.bundle_id,
                    "sha256": rendered.sha256,
                    "output": output.as_posix(),
                }
            )
        else:
            renderer.ok(f"wrote {output.as_posix()} (sha256 {rendered.sha256})")
        return EXIT_OK

    if _flag(args, "json"):
        renderer.json({"command": "render", **rendered.to_dict()})
    else:
        sys.stdout.write(rendered.text)
    return EXIT_OK


def _cmd_cold_start_check(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    service = _service(config, args)
    renderer = _get_renderer(args)
    if _flag(args, "list_checks"):
        if args.limit <= 0:
            raise CLIError("--limit must be > 0", exit_code=EXIT_CONFIG)
        checks = service.list_continuity_checks(limit=args.limit)
        if _flag(args, "json"):
            renderer.json(
                {"command": "cold-start-check", "checks": [check.to_dict() for check in checks]}
            )
            return EXIT_OK
        renderer.table(
            ["check", "run_at", "verdict", "bundle", "reason"],
            [
                [
                    check.check_id,
                    iso8601z(check.run_at),
                    check.verdict.value,
                    check.bundle_id or "",
                    "" if check.failure_reason is None else check.failure_reason.value,
                ]
                for check in checks
            ],
        )
        return EXIT_OK

    check = service.run_cold_start_check(
        bundle_id=args.bundle_id,
        work_item_id=args.work_item_id,
        role=args.role,
        repo_full_name=args.repo_full_name,
    )
    exit_code = EXIT_OK if check.passed else EXIT_REJECTED
    if _flag(args, "json"):
        renderer.json({"command": "cold-start-check", "check": check.to_dict()})
        return exit_code
    label = f"{check.check_id}: {check.summary}"
    if check.passed:
        renderer.ok(label)
    else:
        renderer.fail(label)
    return exit_code


def _cmd_config(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    renderer = _get_renderer(args)
    if _flag(args, "json"):
        renderer.json(
            {
                "command": "config",
                "active_profile": _optional_str(args.profile),
                "config": json.loads(dump_effective_config(config)),
            }
        )
        return EXIT_OK
    renderer.kv("Active profile", _optional_str(args.profile) or "(default)")
    renderer.text(json.dumps(json.loads(dump_effective_config(config)), indent=2, sort_keys=True))
    return EXIT_OK


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, object] = {}
    state_db = _optional_str(getattr(args, "state_db", None))
    if state_db is not None:
        overrides["paths.state_db"] = state_db
    log_dir = _optional_str(getattr(args, "log_dir", None))
    if log_dir is not None:
        overrides["observability.log_dir"] = log_dir
    try:
        return load_config(
            _optional_str(getattr(args, "config_path", None)),
            profile=_optional_str(getattr(args, "profile", None)),
            cli_overrides=overrides,
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_CONFIG) from exc


def _service(config: Mapping[str, Any], args: argparse.Namespace) -> BundleService:
    return BundleService.from_config(
        config, change_provider=_change_provider(args), distiller=_distiller(args)
    )


def _change_provider(args: argparse.Namespace) -> ChangeRequestProvider | None:
    if _change_ref(args) is None:
        return None
    return GitChangeProvider(getattr(args, "git_dir", "."))


def _distiller(args: argparse.Namespace) -> Distiller:
    if getattr(args, "distiller", "extractive") == "none":
        return NullDistiller()
    return ExtractiveDistiller()


def _change_ref(args: argparse.Namespace) -> ChangeRef | None:
    base_sha = _optional_str(getattr(args, "base_sha", None))
    head_sha = _optional_str(getattr(args, "head_sha", None))
    if base_sha is None and head_sha is None:
        return None
    if base_sha is None or head_sha is None:
        raise CLIError("--base-sha and --head-sha must be given together", exit_code=EXIT_CONFIG)
    return ChangeRef(
        base_sha=base_sha,
        head_sha=head_sha,
        pr_url=_optional_str(getattr(args, "pr_url", None)),
        pr_number=getattr(args, "pr_number", None),
    )


def _build_request(args: argparse.Namespace) -> BuildRequest:
    selected = getattr(args, "artifact_ids", None)
    try:
        return BuildRequest(
            repo_full_name=args.repo_full_name,
            work_item_id=args.work_item_id,
            role=args.role,
            selected_artifact_ids=None if selected is None else tuple(selected),
            change_ref=_change_ref(args),
            retrieval_query=args.query,
            max_artifacts=args.max_artifacts,
        )
    except (TypeError, ValueError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_CONFIG) from exc


def _read_json_object(source: str) -> dict[str, Any]:
    try:
        if source == "-":
            raw = sys.stdin.read()
        else:
            raw = Path(source).expanduser().read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"unable to read {source}: {exc}", exit_code=EXIT_CONFIG) from exc
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CLIError(f"invalid JSON in {source}: {exc}", exit_code=EXIT_CONFIG) from exc
    if not isinstance(parsed, dict):
        raise CLIError(f"{source} must contain a JSON object", exit_code=EXIT_CONFIG)
    return parsed


def _emit_build_error(
    args: argparse.Namespace, renderer: CLIRenderer, error: BuildError
) -> int:
    payload = error.to_dict()
    if _flag(args, "json"):
        renderer.json({"command": args.command, "error": payload})
    else:
        renderer.build_error(payload)
    if error.kind is BuildErrorKind.INTERNAL_ERROR:
        return EXIT_INTERNAL
    return EXIT_REJECTED


def _emit_requirements(args: argparse.Namespace, command: str, payload: dict[str, object]) -> int:
    renderer = _get_renderer(args)
    if _flag(args, "json"):
        renderer.json({"command": command, **payload})
        return EXIT_OK
    renderer.kv("RED", f"{payload['red_id']} v{payload['version']}")
    renderer.kv("Status", payload["validation_status"])
    validation = payload["validation"]
    failures = validation.get("failures") if isinstance(validation, Mapping) else None
    if isinstance(failures, list) and failures:
        renderer.section("Failures:")
        renderer.items([f"[{item['type']}] {item['message']}" for item in failures])
    return EXIT_OK


def _emit_simple(
    args: argparse.Namespace, command: str, payload: dict[str, object], summary: str
) -> int:
    renderer = _get_renderer(args)
    if _flag(args, "json"):
        renderer.json({"command": command, **payload})
    else:
        renderer.ok(summary)
    return EXIT_OK


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=_flag(args, "verbose"))


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


__all__ = ["CLIError", "build_parser", "run_cli"]
