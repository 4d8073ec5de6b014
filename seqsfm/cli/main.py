"""
Command-line interface for the sequential SfM engine.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from seqsfm.config import (
    IntrinsicType,
    MultiviewMatchConstraint,
    ResectionMethod,
    SequentialSfMConfig,
    TriangulationMethod,
)
from seqsfm.io.scene_io import load_sfm_inputs, save_reconstruction_npz
from seqsfm.sfm_inc.incremental_sfm import SequentialSfMEngine
from seqsfm.sfm_inc.providers import RecordingDiagnosticsSink
from seqsfm.viz.plotly_viz import plot_reconstruction


def _enum_values(enum_cls) -> List[str]:
    return sorted({member.value for member in enum_cls})


def build_parser() -> argparse.ArgumentParser:
    defaults = SequentialSfMConfig()
    parser = argparse.ArgumentParser(
        description="Sequential Structure-from-Motion from features and pairwise matches"
    )
    parser.add_argument(
        "inputs",
        type=str,
        help="Path to the .npz file with views, intrinsics, features and matches",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Output directory for the reconstruction files (default: output)",
    )
    parser.add_argument(
        "--initial-pair",
        type=int,
        nargs=2,
        default=None,
        metavar=("VIEW_A", "VIEW_B"),
        help="Pin the initial pair instead of selecting it automatically",
    )
    parser.add_argument(
        "--initial-triplet",
        type=int,
        nargs=3,
        default=None,
        metavar=("VIEW_A", "VIEW_B", "VIEW_C"),
        help="Pin the initial triplet (takes precedence over --initial-pair)",
    )
    parser.add_argument(
        "--triplet-seed",
        action="store_true",
        help="Select a seed triplet instead of a pair",
    )
    parser.add_argument(
        "--match-constraint",
        type=str,
        default=defaults.multiview_match_constraint.value,
        choices=_enum_values(MultiviewMatchConstraint),
        help="Multiview match constraint (default: %(default)s)",
    )
    parser.add_argument(
        "--triangulation-method",
        type=str,
        default=defaults.triangulation_method.value,
        choices=_enum_values(TriangulationMethod),
        help="Triangulation method (default: %(default)s)",
    )
    parser.add_argument(
        "--resection-method",
        type=str,
        default=defaults.resection_method.value,
        choices=_enum_values(ResectionMethod),
        help="Resection solver (default: %(default)s)",
    )
    parser.add_argument(
        "--camera-model",
        type=str,
        default=defaults.unknown_camera_type.value,
        choices=[v for v in _enum_values(IntrinsicType) if v != IntrinsicType.UNKNOWN.value],
        help="Lens model used for intrinsics of unknown type (default: %(default)s)",
    )
    parser.add_argument(
        "--refine-intrinsics",
        action="store_true",
        help="Refine focal length, principal point and distortion in bundle adjustment",
    )
    parser.add_argument(
        "--ba-interval",
        type=int,
        default=defaults.bundle_adjustment_interval,
        help="Number of added views between bundle adjustments (default: %(default)s)",
    )
    parser.add_argument(
        "--ba-max-nfev",
        type=int,
        default=defaults.ba_max_nfev,
        help="Maximum function evaluations per bundle adjustment (default: %(default)s)",
    )
    parser.add_argument(
        "--min-angle",
        type=float,
        default=defaults.min_triangulation_angle_deg,
        help="Minimum triangulation angle in degrees (default: %(default)s)",
    )
    parser.add_argument(
        "--max-threshold",
        type=float,
        default=defaults.max_threshold_px,
        help="Upper bound of the adaptive inlier threshold in pixels (default: %(default)s)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=defaults.random_seed,
        help="Random seed of the RANSAC samplers (default: %(default)s)",
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Generate HTML visualization of the reconstruction",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="count",
        default=0,
        help="Increase logging verbosity (-v info, -vv debug)",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> SequentialSfMConfig:
    return SequentialSfMConfig(
        multiview_match_constraint=args.match_constraint,
        unknown_camera_type=args.camera_model,
        initial_pair=tuple(args.initial_pair) if args.initial_pair else None,
        initial_triplet=tuple(args.initial_triplet) if args.initial_triplet else None,
        use_triplet_seed=args.triplet_seed,
        triangulation_method=args.triangulation_method,
        resection_method=args.resection_method,
        min_triangulation_angle_deg=args.min_angle,
        max_threshold_px=args.max_threshold,
        bundle_adjustment_interval=args.ba_interval,
        ba_max_nfev=args.ba_max_nfev,
        refine_intrinsics=args.refine_intrinsics,
        random_seed=args.seed,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Usage:
        seqsfm path/to/inputs.npz --output-dir out/ --visualize
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="[%(name)s] %(levelname)s: %(message)s")

    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    # Step 1: Load inputs
    print(f"Loading inputs from {args.inputs}...")
    views, intrinsics, feature_source, match_source = load_sfm_inputs(args.inputs)
    print(f"Loaded {len(views)} views, {len(intrinsics)} intrinsics, "
          f"{len(match_source.matches)} match lists")

    # Step 2: Run the engine
    print("Running sequential SfM...")
    diagnostics = RecordingDiagnosticsSink()
    engine = SequentialSfMEngine(views, intrinsics, feature_source, match_source, config, diagnostics)
    summary = engine.run()

    if not summary.success:
        print(f"Error: reconstruction failed: {summary.error}")
        return 1

    print(
        f"SfM reconstructed {summary.num_resected_views}/{summary.num_views} views and "
        f"{summary.num_landmarks} 3D points (seed {summary.seed}, mse {summary.mse:.4f} px^2)"
    )
    if summary.unresected_view_ids:
        print(f"Views left unresected: {summary.unresected_view_ids}")
    if summary.histogram is not None:
        print("Residual histogram (|du|, |dv| in pixels):")
        print(summary.histogram.to_string())

    # Step 3: Save outputs
    reconstruction_path = output_dir / "reconstruction.npz"
    print(f"Saving reconstruction to {reconstruction_path}...")
    save_reconstruction_npz(str(reconstruction_path), summary.reconstruction)

    # Optional: Generate visualization
    if args.visualize:
        print("Generating visualization...")
        fig = plot_reconstruction(summary.reconstruction)
        viz_path = output_dir / "reconstruction.html"
        fig.write_html(str(viz_path))
        print(f"Visualization saved to {viz_path}")

    print("Pipeline completed successfully!")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
