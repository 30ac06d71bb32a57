"""
Approach-bearing feasibility for region prisms.

A bearing is feasible when the start position for an extraction along it is
not obstructed by the surrounding point cloud. Two checks are available:

- "proximity" (default): the start position sits standoff_distance beyond the
  region boundary along the bearing; the bearing is valid when no cloud point
  lies within clearance_radius (horizontal) of it.
- "hull": the bearing is invalid when the region boundary, either along the
  bearing or opposite it, is covered by the convex hull of the region's own
  points.
"""
from typing import List, Tuple, Dict, Any, Optional, Set, Sequence
import hashlib
import logging
import numpy as np
import shapely
import shapely.geometry as sg

from plan_params import (
    ANGLE_COUNT, FeasibilityParams, Region, RegionPrism, all_angles_valid, as_point_array
)
from geometry import (
    distance_to_boundary, get_points_in_region, outward_vectors, ray_exit_distance, region_center
)
from plan_stats import compute_region_stats

logger = logging.getLogger(__name__)

HULL_TOLERANCE = 1e-9

def start_positions(prism: RegionPrism, standoff_distance: float) -> np.ndarray:
    """(360, 2) candidate start positions, one per integer bearing."""
    center = region_center(prism)
    outward = outward_vectors()
    positions = np.empty((ANGLE_COUNT, 2), dtype=float)
    for angle in range(ANGLE_COUNT):
        direction = (outward[angle, 0], outward[angle, 1])
        reach = distance_to_boundary(prism, center, direction) + standoff_distance
        positions[angle, 0] = center[0] + direction[0] * reach
        positions[angle, 1] = center[1] + direction[1] * reach
    return positions

def compute_valid_start_angles(
    prism: RegionPrism,
    points: Any,
    standoff_distance: float = 10.0,
    clearance_radius: float = 5.0
) -> List[bool]:
    """
    Returns 360 flags, True where the bearing's start position is clear of
    cloud points. Empty clouds and degenerate footprints allow every bearing.
    """
    arr = as_point_array(points)
    if len(arr) == 0 or prism.is_degenerate:
        return all_angles_valid()

    starts = start_positions(prism, standoff_distance)

    tree = shapely.STRtree(shapely.points(arr[:, 0], arr[:, 1]))
    hits = tree.query(
        shapely.points(starts[:, 0], starts[:, 1]),
        predicate="dwithin",
        distance=max(0.0, float(clearance_radius))
    )

    blocked = np.zeros(ANGLE_COUNT, dtype=bool)
    if hits.size:
        blocked[np.unique(hits[0])] = True

    return [not b for b in blocked.tolist()]

def compute_hull_allowed_angles(prism: RegionPrism, region_points: np.ndarray) -> List[int]:
    """
    Bearings whose outward and opposite boundary points both lie outside the
    convex hull of the region's points.
    """
    all_angles = list(range(ANGLE_COUNT))
    if prism.is_degenerate or len(region_points) < 3:
        return all_angles

    hull = sg.MultiPoint([(float(p[0]), float(p[1])) for p in region_points]).convex_hull
    if not isinstance(hull, sg.Polygon) or len(hull.exterior.coords) - 1 < 3:
        return all_angles

    center = region_center(prism)
    outward = outward_vectors()

    boundary_points = []
    for angle in all_angles:
        ox, oy = outward[angle]
        out_dist = ray_exit_distance(prism, center, (ox, oy))
        opp_dist = ray_exit_distance(prism, center, (-ox, -oy))
        boundary_points.append((
            (center[0] + ox * out_dist, center[1] + oy * out_dist),
            (center[0] - ox * opp_dist, center[1] - oy * opp_dist)
        ))

    outward_pts = shapely.points([b[0] for b in boundary_points])
    opposite_pts = shapely.points([b[1] for b in boundary_points])
    outward_covered = shapely.dwithin(hull, outward_pts, HULL_TOLERANCE)
    opposite_covered = shapely.dwithin(hull, opposite_pts, HULL_TOLERANCE)

    return [a for a in all_angles if not (outward_covered[a] or opposite_covered[a])]

def angles_to_flags(allowed: Sequence[int]) -> List[bool]:
    flags = [False] * ANGLE_COUNT
    for angle in allowed:
        flags[int(angle) % ANGLE_COUNT] = True
    return flags

def compute_region_feasibility(
    prism: RegionPrism,
    points: Any,
    params: Optional[FeasibilityParams] = None
) -> List[bool]:
    params = params or FeasibilityParams()
    arr = as_point_array(points)

    if params.method == "hull":
        return angles_to_flags(compute_hull_allowed_angles(prism, get_points_in_region(arr, prism)))

    if params.method != "proximity":
        logger.warning("Unknown feasibility method %r, using proximity", params.method)

    return compute_valid_start_angles(
        prism, arr, params.standoff_distance, params.clearance_radius
    )

def compute_allowed_angles_by_region_key(
    regions: Sequence[Region],
    points: Any,
    params: Optional[FeasibilityParams] = None
) -> Dict[str, Set[int]]:
    arr = as_point_array(points)
    by_key: Dict[str, Set[int]] = {}
    for region in regions:
        flags = compute_region_feasibility(region.prism, arr, params)
        by_key[region.key] = {a for a, ok in enumerate(flags) if ok}
    return by_key

def point_set_fingerprint(points: np.ndarray) -> str:
    arr = np.ascontiguousarray(points, dtype=float)
    digest = hashlib.sha1(arr.tobytes())
    digest.update(str(arr.shape).encode())
    return digest.hexdigest()

class ValidAngleCache:
    """
    Keeps valid-angle tables per region prism. A table is recomputed only
    when the prism, the feasibility parameters or the point set change.
    """

    def __init__(self, params: Optional[FeasibilityParams] = None):
        self.params = params or FeasibilityParams()
        self._tables: Dict[Tuple[RegionPrism, Tuple[float, float, str], str], List[bool]] = {}
        self.computations = 0

    def _params_key(self) -> Tuple[float, float, str]:
        return (float(self.params.standoff_distance), float(self.params.clearance_radius), self.params.method)

    def get(self, prism: RegionPrism, points: Any, fingerprint: Optional[str] = None) -> List[bool]:
        arr = as_point_array(points)
        if fingerprint is None:
            fingerprint = point_set_fingerprint(arr)

        key = (prism, self._params_key(), fingerprint)
        cached = self._tables.get(key)
        if cached is None:
            cached = compute_region_feasibility(prism, arr, self.params)
            self._tables[key] = cached
            self.computations += 1
            logger.debug("Computed valid start angles: %d of %d valid", sum(cached), ANGLE_COUNT)
        return list(cached)

    def clear(self) -> None:
        self._tables.clear()

def build_region(
    key: str,
    prism: RegionPrism,
    points: Any,
    region_id: str = "",
    params: Optional[FeasibilityParams] = None,
    cache: Optional[ValidAngleCache] = None
) -> Region:
    """
    Creates a Region with membership statistics and its valid-angle table.
    """
    arr = as_point_array(points)
    stats = compute_region_stats(get_points_in_region(arr, prism))

    if cache is not None:
        valid = cache.get(prism, arr)
    else:
        valid = compute_region_feasibility(prism, arr, params)

    return Region(
        key=str(key),
        prism=prism,
        region_id=region_id or f"region-{key}",
        point_count=stats["point_count"],
        min_w=stats["min_w"],
        max_w=stats["max_w"],
        avg_w=stats["avg_w"],
        valid_start_angles=valid
    )
