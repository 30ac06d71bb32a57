from typing import Tuple
import math
import sqlite3
import numpy as np
import pandas as pd

from plan_params import POINT_COLUMNS, RegionPrism, as_point_array

MIN_W = 0.5
MAX_W = 10.0
Q1_W = 1.0
Q3_W = 2.0

def generate_grades(count: int, rng: np.random.Generator) -> np.ndarray:
    """
    Grades with a skewed quartile mix: the lowest quarter in [MIN_W, Q1_W),
    the middle half in [Q1_W, Q3_W), the top quarter in [Q3_W, MAX_W].
    Returned shuffled.
    """
    q1_count = int(math.floor(count * 0.25))
    q3_count = int(math.floor(count * 0.75))

    values = np.empty(count, dtype=float)
    values[:q1_count] = rng.uniform(MIN_W, Q1_W, q1_count)
    values[q1_count:q3_count] = rng.uniform(Q1_W, Q3_W, q3_count - q1_count)
    values[q3_count:] = rng.uniform(Q3_W, MAX_W, count - q3_count)

    rng.shuffle(values)
    return values

def get_sample_point_cloud(
    num_points: int = 20000,
    radius: float = 200.0,
    center: Tuple[float, float] = (0.0, 0.0),
    elevation: float = 100.0,
    depth: float = 60.0,
    seed: int = 42
) -> np.ndarray:
    """
    Returns a synthetic point cloud shaped like a bowl-shaped pit,
    as an (N, 4) array of x, y, z, w.

    Args:
        num_points: Number of points to generate.
        radius: Radius of the pit rim.
        center: (x, y) center of the pit.
        elevation: Z coordinate of the rim.
        depth: Depth of the pit floor below the rim.
        seed: Seed for reproducible output.
    """
    rng = np.random.default_rng(seed)

    # Uniform over the disc
    r = radius * np.sqrt(rng.uniform(0.0, 1.0, num_points))
    theta = rng.uniform(0.0, 2 * math.pi, num_points)
    x = center[0] + r * np.cos(theta)
    y = center[1] + r * np.sin(theta)

    # Bowl surface, jittered vertically
    z = elevation - depth * (1.0 - (r / radius) ** 2) + rng.normal(0.0, 1.0, num_points)

    w = generate_grades(num_points, rng)
    return np.column_stack((x, y, z, w))

def get_sample_region(
    center: Tuple[float, float] = (0.0, 0.0),
    half_width: float = 40.0,
    min_z: float = 40.0,
    max_z: float = 110.0
) -> RegionPrism:
    """A square prism around center, sized for the sample cloud."""
    cx, cy = center
    return RegionPrism.from_coords(
        [
            (cx - half_width, cy - half_width),
            (cx + half_width, cy - half_width),
            (cx + half_width, cy + half_width),
            (cx - half_width, cy + half_width)
        ],
        min_z,
        max_z
    )

def _to_render_space(df: pd.DataFrame, recenter: bool) -> np.ndarray:
    df = df.apply(pd.to_numeric, errors="coerce")
    df = df.replace([np.inf, -np.inf], np.nan).dropna()

    if recenter and not df.empty:
        offset = df[["x", "y", "z"]].mean()
        df[["x", "y", "z"]] = df[["x", "y", "z"]] - offset

    return as_point_array(df[list(POINT_COLUMNS)])

def load_points_from_db(path: str, table: str = "MockData", recenter: bool = True) -> np.ndarray:
    """
    Loads x, y, z, w rows from a SQLite table.
    Non-numeric rows are dropped. With recenter, XYZ are shifted so the
    cloud's mean sits at the origin.
    """
    if not table.isidentifier():
        raise ValueError(f"Invalid table name: {table!r}")

    conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
    try:
        df = pd.read_sql_query(f"SELECT x, y, z, w FROM {table}", conn)
    finally:
        conn.close()

    return _to_render_space(df, recenter)

def load_points_from_csv(path: str, recenter: bool = False) -> np.ndarray:
    df = pd.read_csv(path, usecols=list(POINT_COLUMNS))
    return _to_render_space(df, recenter)
