"""
Collaborator interfaces for bundle sources, plus the local git change provider.

Every source fetch made by the builder yields a ``SourceResult``: either a
value or a ``DegradedReason``. Stores are synchronous (the builder runs them
in worker threads); the distiller is async.
"""

from __future__ import annotations

import os
import re
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Generic, Protocol, TypeVar

from context_bundler.domain.models import (
    AgentRun,
    ArtifactCandidate,
    ChangeRef,
    DistilledArtifact,
    Instruction,
    IntegrationManifest,
    RequirementsDocument,
    RequirementsFailure,
    ValidationStatus,
)

T = TypeVar("T")

_SHA_PATTERN = re.compile(r"^[0-9A-Za-z._/~^@{}-]+$")


class SourceName(StrEnum):
    REQUIREMENTS = "requirements"
    MANIFEST = "manifest"
    DIFF = "diff"
    CHANGED_FILES = "changed_files"
    ARTIFACTS = "artifacts"
    DISTILLATION = "distillation"
    INSTRUCTIONS = "instructions"


@dataclass(frozen=True, slots=True)
class DegradedReason:
    """Why a source contributed nothing (or less) to a bundle."""

    source: SourceName
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"source": self.source.value, "code": self.code, "message": self.message}


@dataclass(frozen=True, slots=True)
class SourceResult(Generic[T]):
    value: T | None = None
    degraded: DegradedReason | None = None

    @classmethod
    def ok(cls, value: T) -> SourceResult[T]:
        return cls(value=value)

    @classmethod
    def degrade(cls, source: SourceName, code: str, message: str) -> SourceResult[T]:
        return cls(degraded=DegradedReason(source=source, code=code, message=message))

    @property
    def is_ok(self) -> bool:
        return self.degraded is None


@dataclass(frozen=True, slots=True)
class DiffResult:
    diff: str


@dataclass(frozen=True, slots=True)
class ChangedFile:
    path: str
    additions: int
    deletions: int
    patch: str | None = None

    @property
    def changes(self) -> int:
        return self.additions + self.deletions


@dataclass(frozen=True, slots=True)
class ChangedFilesResult:
    files: tuple[ChangedFile, ...]


@dataclass(frozen=True, slots=True)
class DistillResult:
    distilled: DistilledArtifact | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        if (self.distilled is None) == (self.error is None):
            raise ValueError("DistillResult requires exactly one of distilled/error")

    @property
    def success(self) -> bool:
        return self.distilled is not None


class RequirementsStore(Protocol):
    def get_latest_valid(
        self, repo_full_name: str, work_item_id: str
    ) -> RequirementsDocument | None: ...

    def get_version(
        self, repo_full_name: str, work_item_id: str, version: int
    ) -> RequirementsDocument | None: ...

    def insert_version(
        self,
        repo_full_name: str,
        work_item_id: str,
        red_json: Mapping[str, object],
        *,
        status: ValidationStatus = ...,
        failures: Sequence[RequirementsFailure] = ...,
    ) -> RequirementsDocument: ...


class ManifestStore(Protocol):
    def get_latest(
        self, repo_full_name: str, schema_version: str
    ) -> IntegrationManifest | None: ...

    def get_version(
        self, repo_full_name: str, version: int, schema_version: str
    ) -> IntegrationManifest | None: ...


class ChangeRequestProvider(Protocol):
    def get_diff(self, ref: ChangeRef) -> DiffResult: ...

    def get_changed_files(self, ref: ChangeRef) -> ChangedFilesResult: ...


class ArtifactStore(Protocol):
    def list_for_work_item(
        self, work_item_id: str, *, limit: int = ..., offset: int = ...
    ) -> list[ArtifactCandidate]: ...

    def get_many(self, artifact_ids: Sequence[str]) -> dict[str, ArtifactCandidate]: ...

    def record_distillation(
        self, artifact_id: str, distilled: DistilledArtifact, *, distilled_at: datetime | None = ...
    ) -> None: ...


class Distiller(Protocol):
    async def distill(self, title: str, body: str) -> DistillResult: ...


class InstructionStore(Protocol):
    def list_for_repo(self, repo_full_name: str) -> list[Instruction]: ...


class PinStore(Protocol):
    def pinned_artifact_ids(self, work_item_id: str, role: str) -> frozenset[str]: ...


class AgentRunStore(Protocol):
    def list_for_work_item(
        self, work_item_id: str, *, agent_type: str | None = ..., limit: int = ...
    ) -> list[AgentRun]: ...


class NullDistiller:
    """Distiller used when no distillation service is configured: always an error result."""

    async def distill(self, title: str, body: str) -> DistillResult:
        if not body.strip():
            return DistillResult(error="artifact body is empty or missing")
        return DistillResult(error="distillation service is not configured")


class ChangeProviderError(RuntimeError):
    """Raised when a git subprocess exits non-zero or its output cannot be parsed."""

    def __init__(self, message: str, *, command: Sequence[str] = (), stderr: str = "") -> None:
        self.command = tuple(command)
        self.stderr = stderr
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class GitChangeProvider:
    """Change-request provider backed by ``git diff`` between two commits of a local clone."""

    def __init__(
        self,
        repo_path: str | os.PathLike[str],
        *,
        env_overrides: Mapping[str, str] | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.repo_path = Path(repo_path).expanduser().resolve()
        self._env_overrides = dict(env_overrides or {})
        self._timeout_seconds = timeout_seconds

    def get_diff(self, ref: ChangeRef) -> DiffResult:
        base, head = _revisions(ref)
        return DiffResult(diff=self._run_git(("diff", "--no-color", "--no-ext-diff", base, head)))

    def get_changed_files(self, ref: ChangeRef) -> ChangedFilesResult:
        base, head = _revisions(ref)
        numstat = self._run_git(("diff", "--numstat", "--no-renames", base, head))
        files: list[ChangedFile] = []
        for line in numstat.splitlines():
            if not line.strip():
                continue
            parts = line.split("\t", 2)
            if len(parts) != 3:
                raise ChangeProviderError(f"unexpected numstat line: {line!r}")
            added, deleted, path = parts
            if added == "-" or deleted == "-":
                # Binary files carry no textual patch.
                files.append(ChangedFile(path=path, additions=0, deletions=0, patch=None))
                continue
            patch = self._run_git(
                ("diff", "--no-color", "--no-ext-diff", "--unified=3", base, head, "--", path)
            )
            files.append(
                ChangedFile(
                    path=path,
                    additions=int(added),
                    deletions=int(deleted),
                    patch=_strip_file_header(patch) or None,
                )
            )
        return ChangedFilesResult(files=tuple(files))

    def _run_git(self, args: Sequence[str]) -> str:
        command = ("git", *args)
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)
        try:
            completed = subprocess.run(
                command,
                cwd=self.repo_path,
                env=env,
                text=True,
                capture_output=True,
                check=False,
                timeout=self._timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ChangeProviderError(f"git command could not run: {' '.join(command)}") from exc
        if completed.returncode != 0:
            raise ChangeProviderError(
                f"git command failed ({completed.returncode}): {' '.join(command)}",
                command=command,
                stderr=completed.stderr,
            )
        return completed.stdout


def _revisions(ref: ChangeRef) -> tuple[str, str]:
    for value in (ref.base_sha, ref.head_sha):
        if value.startswith("-") or not _SHA_PATTERN.fullmatch(value):
            raise ChangeProviderError(f"unsafe revision {value!r}")
    return ref.base_sha, ref.head_sha


def _strip_file_header(patch: str) -> str:
    """Drop ``diff --git``/index/---/+++ lines so the patch starts at the first hunk."""
    lines = patch.splitlines()
    for index, line in enumerate(lines):
        if line.startswith("@@"):
            return "\n".join(lines[index:])
    return ""


__all__ = [
    "AgentRunStore",
    "ArtifactStore",
    "ChangeProviderError",
    "ChangeRequestProvider",
    "ChangedFile",
    "ChangedFilesResult",
    "DegradedReason",
    "DiffResult",
    "DistillResult",
    "Distiller",
    "GitChangeProvider",
    "InstructionStore",
    "ManifestStore",
    "NullDistiller",
    "PinStore",
    "RequirementsStore",
    "SourceName",
    "SourceResult",
]
