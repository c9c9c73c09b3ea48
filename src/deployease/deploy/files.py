"""File-set validation and content hashing for deployments."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from pathlib import PurePosixPath
from typing import Iterable

from deployease.contracts.models import FileSpec
from deployease.contracts.types import Branch
from deployease.errors import ValidationError

MAX_FILES = 100
MAX_FILE_SIZE = 5 * 1024 * 1024
VALID_FILE_EXTENSIONS = frozenset({".html", ".css", ".js", ".json", ".txt", ".md"})
ROUTING_FILES = frozenset({"_redirects", "_headers", "netlify.toml"})


def parse_branch(name: str | Branch, *, allow_main: bool = False) -> Branch:
    try:
        branch = Branch(str(getattr(name, "value", name)).lower())
    except ValueError as exc:
        raise ValidationError(f"Invalid branch: {name}. Must be 'blue' or 'green'") from exc
    if branch is Branch.MAIN and not allow_main:
        raise ValidationError("Deployments target 'blue' or 'green'; 'main' holds routing only")
    return branch


def _content_size(spec: FileSpec) -> int:
    if spec.encoding == "base64":
        try:
            return len(base64.b64decode(spec.content, validate=True))
        except (binascii.Error, ValueError) as exc:
            raise ValidationError(f"{spec.path}: content is not valid base64") from exc
    return len(spec.content.encode("utf-8"))


def _validate_path(path: str) -> None:
    if not path or path.startswith("/") or "\\" in path:
        raise ValidationError(f"Invalid file path: {path!r}")
    parts = PurePosixPath(path).parts
    if any(part in {"", ".", ".."} for part in parts):
        raise ValidationError(f"Invalid file path: {path!r}")
    name = parts[-1]
    if name in ROUTING_FILES:
        return
    if PurePosixPath(name).suffix.lower() not in VALID_FILE_EXTENSIONS:
        allowed = ", ".join(sorted(VALID_FILE_EXTENSIONS))
        raise ValidationError(f"Invalid file type for {path}. Allowed types: {allowed}")


def validate_files(files: Iterable[FileSpec]) -> list[FileSpec]:
    """Check count, paths, extensions and sizes before any remote call."""
    specs = list(files)
    if not specs:
        raise ValidationError("No files provided for deployment")
    if len(specs) > MAX_FILES:
        raise ValidationError(f"Too many files: {len(specs)} (max {MAX_FILES})")
    seen: set[str] = set()
    for spec in specs:
        _validate_path(spec.path)
        if spec.path in seen:
            raise ValidationError(f"Duplicate file path: {spec.path}")
        seen.add(spec.path)
        size = _content_size(spec)
        if size > MAX_FILE_SIZE:
            raise ValidationError(
                f"File {spec.path} exceeds maximum size of {MAX_FILE_SIZE // (1024 * 1024)}MB"
            )
    return specs


def file_set_hash(files: Iterable[FileSpec]) -> str:
    """Order-independent digest of a file set; the commit message is not part of it."""
    canonical = sorted((f.path, f.encoding, f.content) for f in files)
    return hashlib.sha256(json.dumps(canonical, separators=(",", ":")).encode("utf-8")).hexdigest()
