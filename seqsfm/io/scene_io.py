"""
I/O utilities for loading SfM inputs and saving reconstructions as .npz files.

Input layout (all arrays, ``<v>`` is a view id and ``<a>_<b>`` a view pair):
    view_ids (V,), view_intrinsic_ids (V,)
    intrinsic_ids (I,), intrinsic_K (I, 3, 3), intrinsic_dist (I, 5),
    intrinsic_size (I, 2) as (width, height), intrinsic_types (I,) strings
    features_<v> (N, 2), optional orientations_<v> (N,)
    matches_<a>_<b> (M, 2)
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import numpy as np

from seqsfm.config import IntrinsicType
from seqsfm.sfm_inc.data_structures import Intrinsic, ReconstructionState, View
from seqsfm.sfm_inc.providers import InMemoryFeatureSource, InMemoryMatchSource


def save_sfm_inputs(
    output_path: str,
    views: List[View],
    intrinsics: List[Intrinsic],
    features: Dict[int, np.ndarray],
    matches: Dict[Tuple[int, int], np.ndarray],
    orientations: Optional[Dict[int, np.ndarray]] = None,
) -> None:
    """
    Save views, intrinsics, features and pairwise matches to a .npz file.

    Args:
        output_path: Path where the inputs will be saved (.npz file).
        views: Views with their intrinsic ids.
        intrinsics: Camera intrinsics.
        features: view id -> feature positions (N, 2).
        matches: (view_a, view_b) -> (M, 2) feature index pairs.
        orientations: Optional view id -> feature orientations (N,).
    """
    arrays = {
        "view_ids": np.array([v.id for v in views], dtype=np.int64),
        "view_intrinsic_ids": np.array([v.intrinsic_id for v in views], dtype=np.int64),
        "intrinsic_ids": np.array([k.id for k in intrinsics], dtype=np.int64),
        "intrinsic_K": np.array([k.K for k in intrinsics]).reshape(-1, 3, 3),
        "intrinsic_dist": np.array([k.dist for k in intrinsics]).reshape(-1, 5),
        "intrinsic_size": np.array([[k.width, k.height] for k in intrinsics], dtype=np.int64).reshape(-1, 2),
        "intrinsic_types": np.array([k.type.value for k in intrinsics]),
    }
    for view_id, points in features.items():
        arrays[f"features_{view_id}"] = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    for view_id, angles in (orientations or {}).items():
        arrays[f"orientations_{view_id}"] = np.asarray(angles, dtype=np.float64).ravel()
    for (view_a, view_b), pair_matches in matches.items():
        arrays[f"matches_{view_a}_{view_b}"] = np.asarray(pair_matches, dtype=np.int64).reshape(-1, 2)
    np.savez(output_path, **arrays)


def load_sfm_inputs(
    input_path: str,
) -> Tuple[List[View], List[Intrinsic], InMemoryFeatureSource, InMemoryMatchSource]:
    """
    Load SfM inputs written by :func:`save_sfm_inputs`.

    Returns:
        Tuple of (views, intrinsics, feature_source, match_source).

    Raises:
        ValueError: If a required array is missing.
    """
    with np.load(input_path, allow_pickle=False) as data:
        for key in ("view_ids", "view_intrinsic_ids", "intrinsic_ids", "intrinsic_K"):
            if key not in data:
                raise ValueError(f"{input_path}: missing array '{key}'")

        views = [
            View(int(v), int(k)) for v, k in zip(data["view_ids"], data["view_intrinsic_ids"])
        ]
        n_intrinsics = len(data["intrinsic_ids"])
        dists = data["intrinsic_dist"] if "intrinsic_dist" in data else np.zeros((n_intrinsics, 5))
        sizes = data["intrinsic_size"] if "intrinsic_size" in data else np.zeros((n_intrinsics, 2), dtype=int)
        types = (
            data["intrinsic_types"]
            if "intrinsic_types" in data
            else np.array([IntrinsicType.PINHOLE.value] * n_intrinsics)
        )
        intrinsics = [
            Intrinsic(
                id=int(data["intrinsic_ids"][i]),
                K=data["intrinsic_K"][i],
                dist=dists[i],
                width=int(sizes[i][0]),
                height=int(sizes[i][1]),
                type=IntrinsicType(str(types[i])),
            )
            for i in range(n_intrinsics)
        ]

        features = {}
        orientations = {}
        matches = {}
        for key in data.files:
            if key.startswith("features_"):
                features[int(key[len("features_"):])] = data[key]
            elif key.startswith("orientations_"):
                orientations[int(key[len("orientations_"):])] = data[key]
            elif key.startswith("matches_"):
                view_a, view_b = key[len("matches_"):].split("_")
                matches[(int(view_a), int(view_b))] = data[key]

    return views, intrinsics, InMemoryFeatureSource(features, orientations), InMemoryMatchSource(matches)


def save_reconstruction_npz(
    output_path: str,
    state: ReconstructionState,
) -> None:
    """
    Serialize a reconstruction to a .npz file.

    Args:
        output_path: Path where the reconstruction will be saved (.npz file).
        state: ReconstructionState containing poses, landmarks and thresholds.
    """
    # Extract camera poses
    view_ids = sorted(state.poses)
    n_cameras = len(view_ids)
    camera_Rs = np.zeros((n_cameras, 3, 3))
    camera_ts = np.zeros((n_cameras, 3))
    camera_thresholds = np.zeros(n_cameras)
    camera_intrinsic_ids = np.zeros(n_cameras, dtype=int)

    for i, view_id in enumerate(view_ids):
        camera_Rs[i] = state.poses[view_id].R
        camera_ts[i] = state.poses[view_id].t
        camera_thresholds[i] = state.thresholds[view_id]
        camera_intrinsic_ids[i] = state.views[view_id].intrinsic_id

    # Extract 3D points
    track_ids = sorted(state.landmarks)
    points_xyz = np.array([state.landmarks[t].X for t in track_ids]).reshape(-1, 3)

    # Extract observations
    observations = sorted(state.iter_observations())
    obs_track_ids = np.array([o[0] for o in observations], dtype=int)
    obs_view_ids = np.array([o[1] for o in observations], dtype=int)
    obs_feature_ids = np.array([o[2] for o in observations], dtype=int)

    intrinsic_ids = sorted(state.intrinsics)
    np.savez(
        output_path,
        camera_view_ids=np.array(view_ids, dtype=int),
        camera_Rs=camera_Rs,
        camera_ts=camera_ts,
        camera_thresholds=camera_thresholds,
        camera_intrinsic_ids=camera_intrinsic_ids,
        intrinsic_ids=np.array(intrinsic_ids, dtype=int),
        intrinsic_K=np.array([state.intrinsics[k].K for k in intrinsic_ids]).reshape(-1, 3, 3),
        intrinsic_dist=np.array([state.intrinsics[k].dist for k in intrinsic_ids]).reshape(-1, 5),
        points_track_ids=np.array(track_ids, dtype=int),
        points_xyz=points_xyz,
        obs_track_ids=obs_track_ids,
        obs_view_ids=obs_view_ids,
        obs_feature_ids=obs_feature_ids,
        unresected_view_ids=np.array(sorted(state.remaining_view_ids), dtype=int),
    )


__all__ = ["save_sfm_inputs", "load_sfm_inputs", "save_reconstruction_npz"]
