#!/usr/bin/env python3
"""
Optimize a 3D Tiles tree in place.

Pipeline (`compress`):
1. Recursively collect `.b3dm`, `.glb` and `.gltf` files under ROOT.
2. Run one isolated worker process per file, at most `--workers` at a time.
3. Each worker unwraps `.b3dm` containers to their embedded GLB, checks which
   optimizations are already present, applies the missing ones (`--draco`,
   `--ktx`) through `gltf-transform`, and writes the result. The stale `.b3dm`
   is removed once its `.glb` replacement is written.
4. Every `.json` manifest under ROOT is updated to reference `.glb` instead of
   `.b3dm`.

Running the command twice is safe: already compressed assets plan no work.

Example usage:

    tileset-compress compress ./tiles --draco --ktx --workers 6 --report report.json
    tileset-compress stats ./tiles/0/0.glb
    tileset-compress unwrap ./tiles
    tileset-compress decompress ./tiles

`decompress` strips Draco and texture-transform extensions, keeping every
file (containers included) at its path, so manifests are left untouched.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import container
from .config import (
    DEFAULT_GLTF_TRANSFORM,
    GLTF_TRANSFORM_ENV,
    JobConfig,
    TransformSettings,
    configure_logging,
    default_concurrency,
)
from .inspector import OptimizationState, inspect
from .job import ELIGIBLE_EXTENSIONS, PAYLOAD_EXTENSION, AssetKind
from .manifest import ManifestReport, update_manifests
from .planner import OptimizationOptions
from .scene import PayloadFormat, SceneDocument
from .scheduler import BatchSummary, run_batch
from .transforms import CliTransformer


def parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tileset-compress",
        description="Unwrap, compress and re-link 3D Tiles assets in place.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_batch_arguments(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "root",
            type=Path,
            help="Tileset directory (searched recursively for .b3dm/.glb/.gltf and .json manifests).",
        )
        sub.add_argument(
            "--keep-container",
            action="store_true",
            help="Re-wrap optimized payloads into their .b3dm containers instead of unwrapping them to .glb.",
        )
        sub.add_argument(
            "--workers",
            type=int,
            default=default_concurrency(),
            help="Number of parallel worker processes (default: CPUs - 1, at least 1).",
        )
        sub.add_argument(
            "--job-timeout",
            type=float,
            default=None,
            help="Kill a worker that runs longer than this many seconds (default: no limit).",
        )
        sub.add_argument(
            "--gltf-transform",
            default=None,
            help=f"gltf-transform executable (default: env {GLTF_TRANSFORM_ENV} or '{DEFAULT_GLTF_TRANSFORM}').",
        )
        sub.add_argument(
            "--report",
            type=Path,
            help="Optional path to store a JSON summary of the run.",
        )
        sub.add_argument(
            "--dry-run",
            action="store_true",
            help="Inspect files and show planned optimizations without writing anything.",
        )
        sub.add_argument(
            "--verbose",
            action="store_true",
            help="Enable debug logging.",
        )

    compress_parser = subparsers.add_parser("compress", help="Optimize every tile asset under ROOT.")
    add_batch_arguments(compress_parser)
    compress_parser.add_argument(
        "--draco",
        action="store_true",
        help="Apply Draco mesh compression where it is not already present.",
    )
    compress_parser.add_argument(
        "--ktx",
        action="store_true",
        help="Re-encode textures to KTX2 (ETC1S) where no KTX2 texture is present.",
    )
    compress_parser.add_argument(
        "--no-structural",
        action="store_true",
        help="Skip the dedup/flatten/join passes that normally precede compression.",
    )

    unwrap_parser = subparsers.add_parser(
        "unwrap",
        help="Extract the GLB payload of every .b3dm under ROOT and re-link manifests.",
    )
    add_batch_arguments(unwrap_parser)

    decompress_parser = subparsers.add_parser(
        "decompress",
        help="Remove Draco and KHR_texture_transform from every tile under ROOT, in place.",
    )
    add_batch_arguments(decompress_parser)

    stats_parser = subparsers.add_parser("stats", help="Print optimization statistics for tile files.")
    stats_parser.add_argument("files", type=Path, nargs="+", help="One or more .b3dm/.glb/.gltf files.")
    stats_parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")

    args = parser.parse_args(list(argv))

    if getattr(args, "workers", 1) < 1:
        parser.error("--workers must be >= 1")
    if getattr(args, "job_timeout", None) is not None and args.job_timeout <= 0:
        parser.error("--job-timeout must be > 0")
    if args.command == "unwrap" and args.keep_container:
        parser.error("--keep-container makes no sense with unwrap")
    if args.command == "decompress" and args.keep_container:
        parser.error("decompress always keeps containers; drop --keep-container")

    return args


def discover_assets(root: Path, unwrap_containers: bool = True) -> List[Path]:
    files = [
        path
        for path in root.rglob("*")
        if path.suffix.lower() in ELIGIBLE_EXTENSIONS and path.is_file()
    ]
    if unwrap_containers:
        # Unwrapping a.b3dm would overwrite a.glb, so the container is dropped.
        present = set(files)
        kept = []
        for path in files:
            sibling = path.with_suffix(PAYLOAD_EXTENSION)
            if AssetKind.for_path(path) is AssetKind.CONTAINER and sibling in present:
                logging.warning("Skipping %s: %s already exists", path, sibling.name)
                continue
            kept.append(path)
        files = kept
    return sorted(files, key=lambda p: p.as_posix().lower())


def build_config(args: argparse.Namespace) -> JobConfig:
    transform = TransformSettings.from_env()
    if args.gltf_transform:
        transform = TransformSettings(executable=args.gltf_transform, step_args=transform.step_args)

    if args.command == "compress":
        options = OptimizationOptions(
            mesh_compression=args.draco,
            texture_compression=args.ktx,
            structural=not args.no_structural,
        )
    elif args.command == "decompress":
        options = OptimizationOptions(structural=False, decompress=True)
    else:
        options = OptimizationOptions(structural=False)

    return JobConfig(
        options=options,
        transform=transform,
        unwrap_containers=args.command != "decompress" and not args.keep_container,
        dry_run=args.dry_run,
        verbose=args.verbose,
    )


def load_document(path: Path) -> SceneDocument:
    data = path.read_bytes()
    if AssetKind.for_path(path) is AssetKind.CONTAINER:
        _header, _side_tables, payload = container.decode(data)
        return SceneDocument.from_glb(payload)
    return SceneDocument.read(data, PayloadFormat.for_path(path), base_dir=path.parent)


def log_statistics(path: Path, state: OptimizationState) -> None:
    logging.info("=== Model Statistics: %s ===", path)
    logging.info("Draco Compression: %s", "Yes" if state.mesh_compressed else "No")
    logging.info("Primitives: %d", state.primitive_count)
    logging.info("Triangle Count: %d", state.triangle_count)
    logging.info("Textures: %d", len(state.textures))
    for index, texture in enumerate(state.textures, start=1):
        logging.info("  Texture %d: %s %s", index, texture.encoding.value, texture.resolution)


def run_stats(files: List[Path]) -> int:
    failures = 0
    for path in files:
        try:
            state = inspect(load_document(path))
        except (OSError, ValueError) as exc:
            failures += 1
            logging.error("Cannot read %s: %s", path, exc)
            continue
        log_statistics(path, state)
    return 1 if failures else 0


def log_summary(summary: BatchSummary, manifests: Optional[ManifestReport]) -> None:
    logging.info("---- Compression Summary ----")
    logging.info(
        "Files: %d total | %d written | %d skipped | %d failed",
        summary.total,
        summary.succeeded,
        summary.skipped,
        summary.failed,
    )
    logging.info("Total time taken: %.2f seconds", summary.elapsed_seconds)
    logging.info("Average processing time per file: %.4f seconds", summary.average_seconds)
    if manifests is not None:
        logging.info(
            "Manifests: %d scanned | %d updated | %d unreadable",
            manifests.scanned,
            len(manifests.updated),
            len(manifests.failed),
        )
    for result in summary.results:
        if not result.ok:
            logging.info(" - FAILED %s: %s", result.path, result.describe())


def write_report(
    report_path: Path,
    root: Path,
    config: JobConfig,
    summary: BatchSummary,
    manifests: Optional[ManifestReport],
) -> None:
    payload: Dict[str, object] = {
        "root": str(root),
        "options": {
            "draco": config.options.mesh_compression,
            "ktx": config.options.texture_compression,
            "structural": config.options.structural,
            "decompress": config.options.decompress,
            "unwrap_containers": config.unwrap_containers,
            "dry_run": config.dry_run,
        },
        "stats": {
            "total": summary.total,
            "succeeded": summary.succeeded,
            "skipped": summary.skipped,
            "failed": summary.failed,
            "elapsed_seconds": round(summary.elapsed_seconds, 3),
            "average_seconds": round(summary.average_seconds, 4),
        },
        "results": [result.to_dict() for result in sorted(summary.results, key=lambda r: r.path)],
    }
    if manifests is not None:
        payload["manifests"] = {
            "scanned": manifests.scanned,
            "updated": [str(path) for path in manifests.updated],
            "failed": [{"path": str(path), "reason": reason} for path, reason in manifests.failed],
        }
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    logging.info("Report written to %s", report_path)


def run_tree(args: argparse.Namespace) -> int:
    root = args.root.resolve()
    if not root.exists():
        logging.error("Input path does not exist: %s", root)
        return 2
    if not root.is_dir():
        logging.error("Provided path is not a valid directory: %s", root)
        return 2

    config = build_config(args)
    options = config.options
    needs_tool = options.mesh_compression or options.texture_compression or options.decompress
    if needs_tool and not config.dry_run and not CliTransformer(config.transform).available():
        logging.error(
            "Cannot find %r. Install it with `npm install -g @gltf-transform/cli` or set %s.",
            config.transform.executable,
            GLTF_TRANSFORM_ENV,
        )
        return 2

    files = discover_assets(root, config.unwrap_containers)
    if not files:
        logging.warning("No %s files found under %s", "/".join(ELIGIBLE_EXTENSIONS), root)
        return 1

    logging.info("Found %d files to process under %s", len(files), root)
    if config.dry_run:
        logging.info("Running in dry-run mode (no transforms, no writes)")

    summary = run_batch(files, config, args.workers, job_timeout=args.job_timeout)

    manifests: Optional[ManifestReport] = None
    if config.unwrap_containers and not config.dry_run:
        # Failed containers stay on disk, so manifests keep pointing at them.
        relinked = [
            Path(result.path)
            for result in summary.results
            if result.ok and result.output_path and result.output_path != result.path
        ]
        manifests = update_manifests(
            root, [(container.CONTAINER_EXTENSION, PAYLOAD_EXTENSION)], relinked=relinked
        )

    log_summary(summary, manifests)
    if args.report:
        write_report(args.report, root, config, summary, manifests)

    return 1 if summary.failed else 0


def main(argv: Iterable[str]) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)

    if args.command == "stats":
        return run_stats(args.files)
    return run_tree(args)


def run() -> None:
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":
    run()
