from typing import List, Tuple, Sequence, Union
import math
import numpy as np

from plan_params import Point, RegionPrism, ANGLE_COUNT, round_half_up

Vec2 = Tuple[float, float]

# --- Angles ---

def normalize_angle_index(angle: float) -> int:
    """
    Maps any bearing in degrees onto an integer index in [0, 360).
    Rounds first, then wraps (negative angles wrap from 360).
    Non-finite input maps to 0.
    """
    if angle is None or not math.isfinite(angle):
        return 0
    return round_half_up(angle) % ANGLE_COUNT

def circular_distance(a: float, b: float) -> float:
    diff = abs(a - b)
    return min(diff, ANGLE_COUNT - diff)

def outward_vector(angle_deg: float) -> Vec2:
    """Unit horizontal vector for a bearing (0 deg = +x, counter-clockwise)."""
    rad = math.radians(angle_deg)
    return (math.cos(rad), math.sin(rad))

def outward_vectors() -> np.ndarray:
    """(360, 2) array of unit vectors, one per integer bearing."""
    rad = np.radians(np.arange(ANGLE_COUNT, dtype=float))
    return np.column_stack((np.cos(rad), np.sin(rad)))

# --- Region membership ---

def points_in_region_mask(points: np.ndarray, prism: RegionPrism) -> np.ndarray:
    """
    Even-odd ray casting against the footprint, combined with the
    [min_z, max_z] range check. Vectorized over an (N, 4) array.
    Degenerate footprints contain nothing.
    """
    n = len(points)
    if n == 0 or prism.is_degenerate:
        return np.zeros(n, dtype=bool)

    x = points[:, 0]
    y = points[:, 1]
    z = points[:, 2]

    inside = np.zeros(n, dtype=bool)
    footprint = prism.footprint
    j = len(footprint) - 1
    for i in range(len(footprint)):
        xi, yi = footprint[i]
        xj, yj = footprint[j]
        j = i

        crosses = (yi > y) != (yj > y)
        if yj == yi or not crosses.any():
            continue

        x_intersect = (xj - xi) * (y - yi) / (yj - yi) + xi
        inside ^= crosses & (x < x_intersect)

    return inside & (z >= prism.min_z) & (z <= prism.max_z)

def get_points_in_region(points: np.ndarray, prism: RegionPrism) -> np.ndarray:
    return points[points_in_region_mask(points, prism)]

def point_in_region(point: Union[Point, Sequence[float]], prism: RegionPrism) -> bool:
    if isinstance(point, Point):
        row = (point.x, point.y, point.z, point.w)
    else:
        row = tuple(point)
        if len(row) == 3:
            row = row + (0.0,)
    arr = np.asarray([row], dtype=float)
    return bool(points_in_region_mask(arr, prism)[0])

# --- Directional measures ---

def region_center(prism: RegionPrism) -> Vec2:
    """Centre of the footprint's bounding box (not the area centroid)."""
    if not prism.footprint:
        return (0.0, 0.0)
    xs = [p[0] for p in prism.footprint]
    ys = [p[1] for p in prism.footprint]
    return ((min(xs) + max(xs)) / 2.0, (min(ys) + max(ys)) / 2.0)

def distance_to_boundary(prism: RegionPrism, origin: Vec2, direction: Vec2) -> float:
    """
    Maximum projection of the footprint vertices onto direction, measured
    from origin. Returns -inf for an empty footprint.
    """
    if not prism.footprint:
        return -math.inf
    edge = max(vx * direction[0] + vy * direction[1] for vx, vy in prism.footprint)
    return edge - (origin[0] * direction[0] + origin[1] * direction[1])

def ray_exit_distance(prism: RegionPrism, origin: Vec2, direction: Vec2) -> float:
    """
    Distance along the ray origin + t * direction to the farthest footprint
    edge it crosses. 0 when the ray crosses no edge.
    """
    ox, oy = origin
    dx, dy = direction
    best = 0.0
    footprint = prism.footprint
    for i in range(len(footprint)):
        ax, ay = footprint[i]
        bx, by = footprint[(i + 1) % len(footprint)]
        ex, ey = bx - ax, by - ay
        denom = dx * ey - dy * ex
        if abs(denom) < 1e-12:
            continue
        # Solve origin + t*d = a + s*e
        wx, wy = ax - ox, ay - oy
        t = (wx * ey - wy * ex) / denom
        s = (wx * dy - wy * dx) / denom
        if t >= 0 and -1e-12 <= s <= 1 + 1e-12:
            best = max(best, t)
    return best

# --- Clipping ---

def clip_footprint_by_half_plane(
    footprint: Sequence[Vec2],
    direction: Vec2,
    threshold: float
) -> List[Vec2]:
    """
    Sutherland-Hodgman clip against a single plane, keeping the part of
    the polygon where vertex . direction >= threshold.
    Returns [] when fewer than 3 vertices survive.
    """
    if len(footprint) < 3:
        return []

    dx, dy = direction

    def inside(p: Vec2) -> bool:
        return p[0] * dx + p[1] * dy >= threshold

    def intersect(start: Vec2, end: Vec2):
        ex, ey = end[0] - start[0], end[1] - start[1]
        denom = ex * dx + ey * dy
        if abs(denom) < 1e-8:
            return None
        t = (threshold - (start[0] * dx + start[1] * dy)) / denom
        if t < 0 or t > 1:
            return None
        return (start[0] + t * ex, start[1] + t * ey)

    result: List[Vec2] = []
    count = len(footprint)
    for i in range(count):
        current = tuple(footprint[i])
        nxt = tuple(footprint[(i + 1) % count])
        current_in = inside(current)
        next_in = inside(nxt)

        if current_in and next_in:
            result.append(nxt)
        elif current_in:
            crossing = intersect(current, nxt)
            if crossing is not None:
                result.append(crossing)
        elif next_in:
            crossing = intersect(current, nxt)
            if crossing is not None:
                result.append(crossing)
            result.append(nxt)

    if len(result) < 3:
        return []
    return result
