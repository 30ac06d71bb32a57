from typing import List, Tuple, Dict, Any, Optional, Sequence
import math
import numpy as np
import shapely.geometry as sg

from plan_params import (
    GeneratedPlanItem, PlanGrandTotal, PlanItem, PlanOutcomeItem, PlanStats,
    Region, RegionPrism, as_point_array, coerce_plan_item
)
from geometry import (
    Vec2, clip_footprint_by_half_plane, get_points_in_region,
    normalize_angle_index, outward_vector, region_center
)

def compute_region_stats(points: np.ndarray) -> Dict[str, Any]:
    """
    Membership statistics for the points of one region.
    An empty selection reports zeros.
    """
    if len(points) == 0:
        return {"point_count": 0, "min_w": 0.0, "max_w": 0.0, "avg_w": 0.0}

    w = points[:, 3]
    return {
        "point_count": int(len(points)),
        "min_w": float(w.min()),
        "max_w": float(w.max()),
        "avg_w": float(w.mean())
    }

def depth_order(pool: np.ndarray, center: Vec2, outward: Vec2) -> np.ndarray:
    """
    Indices that sort the pool by depth from the far boundary along the
    bearing, nearest first. Ties keep pool order.
    """
    projection = (pool[:, 0] - center[0]) * outward[0] + (pool[:, 1] - center[1]) * outward[1]
    depth = projection.max() - projection
    return np.argsort(depth, kind="stable")

def create_extraction_footprint(
    prism: RegionPrism,
    angle: float,
    taken_points: np.ndarray
) -> Optional[sg.Polygon]:
    """
    The region footprint clipped to the half-plane swept by the taken points.
    None when nothing was taken or the clip degenerates.
    """
    if len(taken_points) == 0 or prism.is_degenerate:
        return None

    outward = outward_vector(angle)
    threshold = float(np.min(taken_points[:, 0] * outward[0] + taken_points[:, 1] * outward[1]))
    if not math.isfinite(threshold):
        return None

    clipped = clip_footprint_by_half_plane(prism.footprint, outward, threshold)
    if len(clipped) < 3:
        return None
    return sg.Polygon(clipped)

def extract_from_pool(
    pool: np.ndarray,
    center: Vec2,
    angle: float,
    quantity: int
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Takes up to quantity points nearest the boundary along the bearing.
    Returns (taken, remaining).
    """
    if quantity <= 0 or len(pool) == 0:
        return pool[:0], pool

    ordered = pool[depth_order(pool, center, outward_vector(angle))]
    take = min(quantity, len(ordered))
    return ordered[:take], ordered[take:]

def _empty_stats() -> PlanStats:
    return PlanStats(grand_total=PlanGrandTotal(extracted_point_count=0, average_grade=0.0))

def compute_plan_stats(
    regions: Sequence[Region],
    plan: Sequence[PlanItem],
    points: Any
) -> PlanStats:
    """
    Simulates the plan item by item. Items on the same region draw from
    one depleting pool in plan order.
    """
    arr = as_point_array(points)
    if not plan or not regions or len(arr) == 0:
        return _empty_stats()

    region_by_key = {r.key: r for r in regions}
    items = [coerce_plan_item(item) for item in plan]

    items_by_region: Dict[str, List[PlanItem]] = {}
    for item in items:
        items_by_region.setdefault(item.region_key, []).append(item)

    stats = PlanStats()
    for item in items:
        region = region_by_key.get(item.region_key)
        if region is None:
            continue
        stats.outcome_by_item_id[item.id] = PlanOutcomeItem(
            plan_item_id=item.id,
            region_id=region.region_id,
            region_point_count=region.point_count,
            region_average_grade=region.avg_w
        )
        stats.extracted_points_by_item_id[item.id] = arr[:0]
        stats.extraction_footprint_by_item_id[item.id] = None

    grand_count = 0
    grand_w = 0.0

    for region_key, region_items in items_by_region.items():
        region = region_by_key.get(region_key)
        if region is None:
            continue

        pool = get_points_in_region(arr, region.prism)
        region_stats = compute_region_stats(pool)
        center = region_center(region.prism)
        valid = region.valid_start_angles

        for item in region_items:
            # Raw bearing for direction, wrapped index for the table
            angle_index = normalize_angle_index(item.angle)
            invalid_start = not (angle_index < len(valid) and bool(valid[angle_index]))

            taken, pool = extract_from_pool(pool, center, item.angle, item.quantity)
            taken_w = float(taken[:, 3].sum()) if len(taken) else 0.0
            count = int(len(taken))

            stats.outcome_by_item_id[item.id] = PlanOutcomeItem(
                plan_item_id=item.id,
                region_id=region.region_id,
                region_point_count=region_stats["point_count"],
                region_average_grade=region_stats["avg_w"],
                extracted_point_count=count,
                extracted_average_grade=taken_w / count if count else 0.0,
                invalid_start=invalid_start
            )
            stats.extracted_points_by_item_id[item.id] = taken
            stats.extraction_footprint_by_item_id[item.id] = create_extraction_footprint(
                region.prism, item.angle, taken
            )
            grand_count += count
            grand_w += taken_w

    stats.grand_total = PlanGrandTotal(
        extracted_point_count=grand_count,
        average_grade=grand_w / grand_count if grand_count else 0.0
    )
    return stats

# --- Optimizer oracles ---

def estimate_plan_outcome(
    average_by_key: Dict[str, float],
    items: Sequence[GeneratedPlanItem]
) -> Tuple[int, float]:
    """
    Region-average estimate: every extracted point carries its region's
    average grade. Returns (total points, average grade).
    """
    total = 0
    weighted = 0.0
    for item in items:
        if item.quantity <= 0:
            continue
        total += item.quantity
        weighted += item.quantity * average_by_key.get(item.region_key, 0.0)
    return total, (weighted / total if total else 0.0)

class RegionAverageEvaluator:
    """Scores candidates from each region's average grade."""

    def __init__(self, average_by_key: Dict[str, float]):
        self.average_by_key = dict(average_by_key)

    def __call__(self, items: Sequence[GeneratedPlanItem]) -> Tuple[int, float]:
        return estimate_plan_outcome(self.average_by_key, items)

class SimulatedExtractionEvaluator:
    """
    Scores candidates with the depth-ordered extraction simulation.
    Region pools are computed once; each call works on its own copies.
    """

    def __init__(self, regions: Sequence[Region], points: Any):
        arr = as_point_array(points)
        self._pools: Dict[str, np.ndarray] = {}
        self._centers: Dict[str, Vec2] = {}
        for region in regions:
            self._pools[region.key] = get_points_in_region(arr, region.prism)
            self._centers[region.key] = region_center(region.prism)

    def __call__(self, items: Sequence[GeneratedPlanItem]) -> Tuple[int, float]:
        pools = dict(self._pools)
        total = 0
        weighted = 0.0
        for item in items:
            pool = pools.get(item.region_key)
            if pool is None:
                continue
            taken, pools[item.region_key] = extract_from_pool(
                pool, self._centers[item.region_key], item.angle, item.quantity
            )
            total += int(len(taken))
            weighted += float(taken[:, 3].sum()) if len(taken) else 0.0
        return total, (weighted / total if total else 0.0)
