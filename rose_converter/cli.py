#!/usr/bin/env python3
"""
cli.py
======

Command line front end for rose_converter.

A scene directory holds one ``.zol`` object list plus the ``.zms`` meshes,
``.zmd`` skeletons and ``.zmo`` animations it names (paths relative to the
object list). Extra animations passed with ``--animation`` drive skeleton 0.

Usage:
    rose-convert to-gltf data/junon/scene.zol --output-root out/gltf --format glb
    rose-convert from-gltf out/gltf/scene.glb --output-root out/rose
    rose-convert bake data/junon/scene.zol --output-root out/baked \\
        --texel-density 8 --samples 64 --workers 4 --report out/bake.json
    rose-convert info data/junon/house.zms
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
import time
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, fields as dataclass_fields
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .codec import (
    AssetKind,
    ObjectList,
    decode_animation,
    decode_asset,
    decode_mesh,
    decode_object_list,
    decode_skeleton,
    encode_animation,
    encode_mesh,
    encode_object_list,
    encode_skeleton,
    object_list_from_scene,
    read_identifier,
    scene_from_object_list,
)
from .errors import BakeError, FormatError
from .gltf_bridge import BridgeOptions, export_scene, import_scene, load_interchange, save_interchange
from .lightmap import BakeConfig, bake
from .scene import Animation, Material, Mesh, ObjectInstance, Scene, Skeleton

SCENE_SUFFIXES = {".zol", ".zms"}
GLTF_SUFFIXES = {".glb", ".gltf"}


# ---------------------------------------------------------------------------
# Scene directories
# ---------------------------------------------------------------------------

def load_scene(path: Path, animation_paths: Sequence[Path] = ()) -> Scene:
    """Load a ``.zol`` scene (with the files it names) or wrap a lone ``.zms``."""
    animations = [
        decode_animation(p.read_bytes(), name=p.stem) for p in animation_paths
    ]

    if path.suffix.lower() == ".zms":
        mesh = decode_mesh(path.read_bytes(), name=path.stem)
        return Scene(
            name=path.stem,
            meshes=[mesh],
            materials=[Material(texture="")],
            animations=animations,
            instances=[ObjectInstance(name=path.stem, mesh=0, material=0)],
        )

    objects = decode_object_list(path.read_bytes())
    base = path.parent
    meshes: List[Mesh] = []
    for name in objects.mesh_names:
        mesh_path = base / name
        if not mesh_path.is_file():
            raise FormatError(f"{path}: mesh file not found: {name}")
        meshes.append(decode_mesh(mesh_path.read_bytes(), name=Path(name).stem))
    skeletons: List[Skeleton] = []
    for name in objects.skeleton_names:
        skeleton_path = base / name
        if not skeleton_path.is_file():
            raise FormatError(f"{path}: skeleton file not found: {name}")
        skeletons.append(decode_skeleton(skeleton_path.read_bytes(), name=Path(name).stem))
    listed: List[Animation] = []
    for ref in objects.animations:
        animation_path = base / ref.file
        if not animation_path.is_file():
            raise FormatError(f"{path}: animation file not found: {ref.file}")
        listed.append(decode_animation(animation_path.read_bytes(), name=Path(ref.file).stem))

    if animations and not skeletons:
        logging.warning("%s: no skeleton to drive %d animations; dropping them", path, len(animations))
        animations = []
    return scene_from_object_list(objects, meshes, skeletons, listed + animations, name=path.stem)


def _safe_file_stem(name: str, used: set) -> str:
    stem = re.sub(r"[^A-Za-z0-9_.-]+", "_", name).strip("._") or "unnamed"
    candidate = stem
    counter = 1
    while candidate.lower() in used:
        counter += 1
        candidate = f"{stem}_{counter}"
    used.add(candidate.lower())
    return candidate


def save_scene(scene: Scene, output_dir: Path) -> Path:
    """Write *scene* as a scene directory; returns the object list path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    used: set = set()

    objects: ObjectList = object_list_from_scene(scene)
    objects.mesh_names = []
    for mesh in scene.meshes:
        file_name = _safe_file_stem(mesh.name, used) + ".zms"
        (output_dir / file_name).write_bytes(encode_mesh(mesh))
        objects.mesh_names.append(file_name)

    objects.skeleton_names = []
    for skeleton in scene.skeletons:
        file_name = _safe_file_stem(skeleton.name, used) + ".zmd"
        (output_dir / file_name).write_bytes(encode_skeleton(skeleton))
        objects.skeleton_names.append(file_name)

    for ref, animation in zip(objects.animations, scene.animations):
        file_name = _safe_file_stem(animation.name, used) + ".zmo"
        (output_dir / file_name).write_bytes(encode_animation(animation))
        ref.file = file_name

    zol_path = output_dir / (_safe_file_stem(scene.name, used) + ".zol")
    zol_path.write_bytes(encode_object_list(objects))
    logging.debug(
        "Wrote %s (%d meshes, %d skeletons, %d animations)",
        zol_path, len(scene.meshes), len(scene.skeletons), len(scene.animations),
    )
    return zol_path


# ---------------------------------------------------------------------------
# Batch conversion
# ---------------------------------------------------------------------------

@dataclass
class ConversionStats:
    total_found: int = 0
    converted: int = 0
    skipped_existing: int = 0
    skipped_corrupt: int = 0
    failed: int = 0
    warnings: int = 0
    failures: List[Dict] = field(default_factory=list)


def merge_stats(target: ConversionStats, source: ConversionStats) -> None:
    """Merge *source* into *target* by summing int fields and extending list fields."""
    for f in dataclass_fields(ConversionStats):
        src_val = getattr(source, f.name)
        if isinstance(src_val, int):
            setattr(target, f.name, getattr(target, f.name) + src_val)
        elif isinstance(src_val, list):
            getattr(target, f.name).extend(src_val)


def convert_single(
    direction: str,
    source: Path,
    output_path: Path,
    options: BridgeOptions,
    animation_paths: Sequence[Path],
    force: bool,
    stats: ConversionStats,
) -> None:
    """Convert one input in *direction* ("to-gltf" or "from-gltf")."""
    stats.total_found += 1

    if not force and output_path.exists():
        stats.skipped_existing += 1
        logging.debug("Skipping existing: %s", output_path)
        return

    try:
        if direction == "to-gltf":
            scene = load_scene(source, animation_paths)
            document = export_scene(scene, options)
            save_interchange(document, output_path, options)
            warnings = document.warnings
        else:
            scene, warnings = import_scene(load_interchange(source), options)
            save_scene(scene, output_path)
    except FormatError as exc:
        stats.skipped_corrupt += 1
        stats.failures.append({"source": str(source), "error": str(exc), "type": type(exc).__name__})
        logging.warning("Format error for %s: %s", source, exc)
        return
    except OSError as exc:
        stats.failed += 1
        stats.failures.append({"source": str(source), "error": str(exc), "type": "io"})
        logging.error("Cannot convert %s: %s", source, exc)
        return
    except Exception as exc:
        stats.failed += 1
        stats.failures.append({"source": str(source), "error": str(exc), "type": "unexpected"})
        logging.error("Unexpected error converting %s: %s", source, exc)
        return

    stats.converted += 1
    stats.warnings += len(warnings)
    logging.debug("Converted %s -> %s (%d warnings)", source, output_path, len(warnings))


def _convert_worker(
    direction: str,
    source: Path,
    output_path: Path,
    options: BridgeOptions,
    animation_paths: Sequence[Path],
    force: bool,
) -> ConversionStats:
    """Worker function for parallel conversion. Returns local stats."""
    stats = ConversionStats()
    convert_single(direction, source, output_path, options, animation_paths, force, stats)
    return stats


def output_path_for(direction: str, source: Path, output_root: Path, fmt: str) -> Path:
    if direction == "to-gltf":
        return output_root / f"{source.stem}.{fmt}"
    return output_root / source.stem


def convert_all(
    direction: str,
    sources: List[Path],
    output_root: Path,
    fmt: str,
    options: BridgeOptions,
    animation_paths: Sequence[Path],
    force: bool,
    report_path: Optional[Path],
    workers: int = 1,
) -> ConversionStats:
    stats = ConversionStats()
    jobs: List[Tuple[Path, Path]] = [
        (source, output_path_for(direction, source, output_root, fmt)) for source in sources
    ]
    total = len(jobs)
    logging.info("Converting %d inputs (%s, workers=%d)", total, direction, workers)
    start_time = time.time()

    if workers <= 1:
        for source, output_path in jobs:
            convert_single(direction, source, output_path, options, animation_paths, force, stats)
    else:
        with ProcessPoolExecutor(max_workers=workers) as executor:
            for worker_stats in executor.map(
                _convert_worker,
                [direction] * total,
                [src for src, _ in jobs],
                [dst for _, dst in jobs],
                [options] * total,
                [tuple(animation_paths)] * total,
                [force] * total,
            ):
                merge_stats(stats, worker_stats)

    elapsed = time.time() - start_time
    logging.info(
        "Conversion complete in %.1fs: %d converted, %d skipped (existing=%d, corrupt=%d), %d failed, %d warnings",
        elapsed, stats.converted,
        stats.skipped_existing + stats.skipped_corrupt,
        stats.skipped_existing, stats.skipped_corrupt,
        stats.failed, stats.warnings,
    )

    if report_path:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report = {
            "direction": direction,
            "total_found": stats.total_found,
            "converted": stats.converted,
            "skipped_existing": stats.skipped_existing,
            "skipped_corrupt": stats.skipped_corrupt,
            "failed": stats.failed,
            "warnings": stats.warnings,
            "failures": stats.failures,
        }
        report_path.write_text(json.dumps(report, indent=2))
        logging.info("Report written to %s", report_path)

    return stats


def discover_inputs(paths: Sequence[Path], suffixes: set) -> List[Path]:
    found: List[Path] = []
    for path in paths:
        if path.is_dir():
            found.extend(sorted(p for p in path.rglob("*") if p.suffix.lower() in suffixes))
        elif path.suffix.lower() in suffixes:
            found.append(path)
        else:
            logging.warning("Ignoring %s (expected %s)", path, ", ".join(sorted(suffixes)))
    return found


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def run_convert(args: argparse.Namespace) -> int:
    options = BridgeOptions(
        unit_scale=args.unit_scale,
        animation_fps=args.fps,
        embed_buffers=args.embed_buffers,
    )
    suffixes = SCENE_SUFFIXES if args.command == "to-gltf" else GLTF_SUFFIXES
    sources = discover_inputs(args.inputs, suffixes)
    if not sources:
        logging.error("No inputs found")
        return 1

    stats = convert_all(
        direction=args.command,
        sources=sources,
        output_root=args.output_root,
        fmt=args.format,
        options=options,
        animation_paths=args.animation,
        force=args.force,
        report_path=args.report,
        workers=max(1, args.workers),
    )
    if stats.failed or stats.skipped_corrupt:
        logging.warning("%d inputs failed conversion", stats.failed + stats.skipped_corrupt)
        return 1
    return 0


def run_bake(args: argparse.Namespace) -> int:
    config = BakeConfig(
        texel_density=args.texel_density,
        padding_texels=args.padding,
        sample_count=args.samples,
        ambient_level=args.ambient,
        light_intensity=args.light_intensity,
        max_distance=args.max_distance,
        ray_offset=args.ray_offset,
        max_atlas_size=args.max_atlas_size,
        workers=max(1, args.workers),
        seed=args.seed,
        atlas_name=args.atlas_name,
    )
    try:
        config.check()
    except ValueError as exc:
        logging.error("Invalid bake settings: %s", exc)
        return 1
    try:
        scene = load_scene(args.input)
    except (FormatError, OSError) as exc:
        logging.error("Cannot load %s: %s", args.input, exc)
        return 1

    result = bake(scene, config)
    output_root: Path = args.output_root
    save_scene(result.scene, output_root)
    if result.atlas.regions:
        result.atlas.save(output_root / config.atlas_name)
        logging.info("Atlas written to %s", output_root / config.atlas_name)

    if args.report:
        args.report.parent.mkdir(parents=True, exist_ok=True)
        args.report.write_text(json.dumps(result.report.to_dict(), indent=2))
        logging.info("Report written to %s", args.report)

    for failure in result.report.failures:
        if isinstance(failure, BakeError):
            logging.error("Instance %s: %s", failure.instance, failure)
    return 0 if result.report.ok else 1


def describe_asset(path: Path) -> str:
    data = path.read_bytes()
    kind, version = read_identifier(data)
    asset = decode_asset(data)
    if kind is AssetKind.MESH:
        mesh: Mesh = asset  # type: ignore[assignment]
        detail = (
            f"{len(mesh.vertices)} vertices, {len(mesh.triangles)} triangles, "
            f"uv2={mesh.has_uv2}, skinned={mesh.is_skinned}"
        )
    elif kind is AssetKind.SKELETON:
        skeleton: Skeleton = asset  # type: ignore[assignment]
        detail = f"{len(skeleton.bones)} bones, {len(skeleton.dummies)} dummies"
    elif kind is AssetKind.ANIMATION:
        animation: Animation = asset  # type: ignore[assignment]
        detail = (
            f"'{animation.name}' {animation.fps} fps, {len(animation.channels)} channels, "
            f"{animation.duration:.3f}s"
        )
    else:
        objects: ObjectList = asset  # type: ignore[assignment]
        detail = (
            f"{len(objects.mesh_names)} meshes, {len(objects.skeleton_names)} skeletons, "
            f"{len(objects.animations)} animations, "
            f"{len(objects.materials)} materials, {len(objects.instances)} instances, "
            f"{len(objects.atlas_regions)} atlas regions"
        )
    tail = getattr(asset, "tail", b"")
    return f"{path.name}: {kind.value.decode()}{version:04d} {detail}, tail={len(tail)} bytes"


def run_info(args: argparse.Namespace) -> int:
    status = 0
    for path in args.inputs:
        try:
            logging.info("%s", describe_asset(path))
        except (FormatError, OSError) as exc:
            logging.error("%s: %s", path, exc)
            status = 1
    return status


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rose-convert",
        description="Convert ROSE 3D assets to and from glTF and bake static lightmaps.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    commands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("to-gltf", "Export .zol scenes or .zms meshes to glTF"),
        ("from-gltf", "Import .glb/.gltf files into ROSE scene directories"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("inputs", type=Path, nargs="+", help="Input files or directories")
        sub.add_argument(
            "--output-root", type=Path, required=True,
            help="Output directory",
        )
        sub.add_argument(
            "--format", choices=["glb", "gltf"], default="glb",
            help="Export container (default: glb)",
        )
        sub.add_argument(
            "--animation", type=Path, action="append", default=[],
            help="ZMO animation to attach to skeleton 0 (repeatable, to-gltf only)",
        )
        sub.add_argument(
            "--unit-scale", type=float, default=BridgeOptions.unit_scale,
            help="Source units to metres (default: %(default)s)",
        )
        sub.add_argument(
            "--fps", type=int, default=BridgeOptions.animation_fps,
            help="Frame rate for imported animations without one (default: %(default)s)",
        )
        sub.add_argument(
            "--embed-buffers", action="store_true",
            help="Embed the binary buffer as a data URI in .gltf output",
        )
        sub.add_argument("--force", action="store_true", help="Overwrite existing outputs")
        sub.add_argument("--report", type=Path, default=None, help="Path for JSON conversion report")
        sub.add_argument(
            "--workers", type=int, default=os.cpu_count() or 4,
            help="Number of parallel worker processes (default: number of CPUs).",
        )
        sub.set_defaults(handler=run_convert)

    defaults = BakeConfig()
    bake_parser = commands.add_parser("bake", help="Bake lightmaps for a .zol scene")
    bake_parser.add_argument("input", type=Path, help="Scene object list (.zol)")
    bake_parser.add_argument("--output-root", type=Path, required=True, help="Output scene directory")
    bake_parser.add_argument("--texel-density", type=float, default=defaults.texel_density,
                             help="Texels per world unit (default: %(default)s)")
    bake_parser.add_argument("--padding", type=int, default=defaults.padding_texels,
                             help="Border texels around each block (default: %(default)s)")
    bake_parser.add_argument("--samples", type=int, default=defaults.sample_count,
                             help="Visibility rays per texel (default: %(default)s)")
    bake_parser.add_argument("--ambient", type=float, default=defaults.ambient_level,
                             help="Illumination floor (default: %(default)s)")
    bake_parser.add_argument("--light-intensity", type=float, default=defaults.light_intensity,
                             help="Added at full sky visibility (default: %(default)s)")
    bake_parser.add_argument("--max-distance", type=float, default=defaults.max_distance,
                             help="Ray length in world units (default: %(default)s)")
    bake_parser.add_argument("--ray-offset", type=float, default=defaults.ray_offset,
                             help="Ray origin offset along the normal (default: %(default)s)")
    bake_parser.add_argument("--max-atlas-size", type=int, default=defaults.max_atlas_size,
                             help="Largest atlas side in texels (default: %(default)s)")
    bake_parser.add_argument("--seed", type=int, default=defaults.seed,
                             help="Sample pattern seed (default: %(default)s)")
    bake_parser.add_argument("--atlas-name", default=defaults.atlas_name,
                             help="Atlas image file name (default: %(default)s)")
    bake_parser.add_argument("--report", type=Path, default=None, help="Path for JSON bake report")
    bake_parser.add_argument(
        "--workers", type=int, default=os.cpu_count() or 4,
        help="Number of parallel worker processes (default: number of CPUs).",
    )
    bake_parser.set_defaults(handler=run_bake)

    info_parser = commands.add_parser("info", help="Summarise ROSE asset files")
    info_parser.add_argument("inputs", type=Path, nargs="+")
    info_parser.set_defaults(handler=run_info)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%H:%M:%S",
    )
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
