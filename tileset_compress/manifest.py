from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import AbstractSet, Any, Callable, List, Optional, Sequence, Tuple
from urllib.parse import unquote

MANIFEST_SUFFIX = ".json"

ReferenceFilter = Callable[[str], bool]


def rewrite_references(
    node: Any,
    stale: str,
    replacement: str,
    accept: Optional[ReferenceFilter] = None,
) -> Any:
    """Return a copy of *node* with every occurrence of *stale* in its strings replaced.

    When *accept* is given, only strings it approves are rewritten.
    """
    if isinstance(node, str):
        if stale not in node or (accept is not None and not accept(node)):
            return node
        return node.replace(stale, replacement)
    if isinstance(node, list):
        return [rewrite_references(item, stale, replacement, accept) for item in node]
    if isinstance(node, dict):
        return {key: rewrite_references(value, stale, replacement, accept) for key, value in node.items()}
    return node


def resolve_reference(base_dir: Path, reference: str) -> Optional[Path]:
    """Filesystem path a manifest reference points at, or None for URLs."""
    if "://" in reference or reference.startswith("data:"):
        return None
    relative = unquote(reference.split("?", 1)[0].split("#", 1)[0])
    return (base_dir / relative).resolve()


@dataclass
class ManifestReport:
    scanned: int = 0
    updated: List[Path] = field(default_factory=list)
    failed: List[Tuple[Path, str]] = field(default_factory=list)


def update_manifest(
    path: Path,
    replacements: Sequence[Tuple[str, str]],
    relinked: Optional[AbstractSet[Path]] = None,
) -> bool:
    """Rewrite one manifest in place; returns True when its content changed.

    With *relinked*, only references resolving to one of those (resolved) files
    are rewritten, so tiles whose job failed keep pointing at their container.
    """
    accept: Optional[ReferenceFilter] = None
    if relinked is not None:
        base_dir = path.parent

        def accept(reference: str) -> bool:
            return resolve_reference(base_dir, reference) in relinked

    content = json.loads(path.read_text(encoding="utf-8"))
    rewritten = content
    for stale, replacement in replacements:
        rewritten = rewrite_references(rewritten, stale, replacement, accept)
    if rewritten == content:
        return False
    path.write_text(json.dumps(rewritten, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return True


def update_manifests(
    root: Path,
    replacements: Sequence[Tuple[str, str]],
    relinked: Optional[Sequence[Path]] = None,
) -> ManifestReport:
    report = ManifestReport()
    targets = None if relinked is None else frozenset(path.resolve() for path in relinked)
    for path in sorted(root.rglob(f"*{MANIFEST_SUFFIX}"), key=lambda p: p.as_posix().lower()):
        if not path.is_file():
            continue
        report.scanned += 1
        try:
            changed = update_manifest(path, replacements, targets)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            report.failed.append((path, str(exc)))
            logging.warning("Skipping manifest %s: %s", path, exc)
            continue
        if changed:
            report.updated.append(path)
            logging.info("%s has been updated.", path.relative_to(root).as_posix())
    return report
