from dataclasses import dataclass, field, replace
from typing import List, Tuple, Dict, Any, Optional, Sequence
import logging
import math
import numpy as np
import shapely.geometry as sg

logger = logging.getLogger(__name__)

ANGLE_COUNT = 360
POINT_COLUMNS = ("x", "y", "z", "w")

def all_angles_valid() -> List[bool]:
    return [True] * ANGLE_COUNT

@dataclass(frozen=True)
class Point:
    x: float
    y: float
    z: float
    w: float

@dataclass(frozen=True)
class RegionPrism:
    footprint: Tuple[Tuple[float, float], ...]
    min_z: float
    max_z: float

    @classmethod
    def from_coords(cls, footprint: Sequence[Sequence[float]], min_z: float, max_z: float) -> 'RegionPrism':
        return cls(
            footprint=tuple((float(p[0]), float(p[1])) for p in footprint),
            min_z=float(min_z),
            max_z=float(max_z)
        )

    @property
    def is_degenerate(self) -> bool:
        return len(self.footprint) < 3

    @property
    def polygon(self) -> sg.Polygon:
        if self.is_degenerate:
            return sg.Polygon()
        return sg.Polygon(self.footprint)

@dataclass
class Region:
    key: str
    prism: RegionPrism
    region_id: str = ""
    point_count: int = 0
    min_w: float = 0.0
    max_w: float = 0.0
    avg_w: float = 0.0
    valid_start_angles: List[bool] = field(default_factory=all_angles_valid)

@dataclass
class PlanItem:
    id: str
    region_key: str
    angle: float = 0
    quantity: float = 0

@dataclass
class PlanOutcomeItem:
    plan_item_id: str
    region_id: str
    region_point_count: int
    region_average_grade: float
    extracted_point_count: int = 0
    extracted_average_grade: float = 0.0
    invalid_start: bool = False

@dataclass
class PlanGrandTotal:
    extracted_point_count: int = 0
    average_grade: float = 0.0

@dataclass
class PlanStats:
    outcome_by_item_id: Dict[str, PlanOutcomeItem] = field(default_factory=dict)
    grand_total: PlanGrandTotal = field(default_factory=PlanGrandTotal)
    extracted_points_by_item_id: Dict[str, np.ndarray] = field(default_factory=dict)
    extraction_footprint_by_item_id: Dict[str, Optional[sg.Polygon]] = field(default_factory=dict)

    @property
    def invalid_start_by_item_id(self) -> Dict[str, bool]:
        return {k: o.invalid_start for k, o in self.outcome_by_item_id.items()}

@dataclass
class FeasibilityParams:
    standoff_distance: float = 10.0
    clearance_radius: float = 5.0
    method: str = "proximity"  # "proximity" or "hull"

def round_half_up(value: float) -> int:
    """Rounds ties upward (2.5 -> 3, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))

def _finite_or(value: Any, default: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    return value if math.isfinite(value) else default

def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))

@dataclass
class GeneratorParams:
    population_size: int = 120
    max_generations: int = 2000
    mutation_rate: float = 0.12
    report_every_generations: int = 8
    elite_count: int = 6
    stall_generations: int = 400
    yield_every_generations: int = 25

    def clamped(self) -> 'GeneratorParams':
        """
        Returns a copy with every field forced into its legal range.
        Non-numeric or non-finite values fall back to the field default first.
        """
        defaults = GeneratorParams()
        population = int(_clamp(round_half_up(_finite_or(self.population_size, defaults.population_size)), 20, 400))
        generations = int(_clamp(round_half_up(_finite_or(self.max_generations, defaults.max_generations)), 50, 10000))
        mutation = _clamp(_finite_or(self.mutation_rate, defaults.mutation_rate), 0.01, 0.8)
        report = int(max(1, round_half_up(_finite_or(self.report_every_generations, defaults.report_every_generations))))
        elites = int(_clamp(round_half_up(_finite_or(self.elite_count, defaults.elite_count)), 1, population // 3))
        stall = int(_clamp(round_half_up(_finite_or(self.stall_generations, defaults.stall_generations)), 20, generations))
        yield_every = int(_clamp(round_half_up(_finite_or(self.yield_every_generations, defaults.yield_every_generations)), 1, 10000))

        return replace(
            self,
            population_size=population,
            max_generations=generations,
            mutation_rate=mutation,
            report_every_generations=report,
            elite_count=elites,
            stall_generations=stall,
            yield_every_generations=yield_every
        )

@dataclass
class GeneratePlanRegion:
    key: str
    max_quantity: float
    average_grade: float
    valid_start_angles: List[bool] = field(default_factory=all_angles_valid)

@dataclass
class GeneratePlanRequest:
    regions: List[GeneratePlanRegion]
    target_point_count: float
    target_average_grade: float
    params: GeneratorParams = field(default_factory=GeneratorParams)
    random_seed: Optional[int] = None

@dataclass(frozen=True)
class GeneratedPlanItem:
    region_key: str
    angle: int
    quantity: int

@dataclass(frozen=True)
class GeneratedPlanCandidate:
    items: Tuple[GeneratedPlanItem, ...] = ()
    total_points: int = 0
    average_grade: float = 0.0
    score: float = math.inf

@dataclass(frozen=True)
class GeneratePlanProgress:
    generation: int
    best: GeneratedPlanCandidate

@dataclass
class GeneratePlanResult:
    candidate: GeneratedPlanCandidate
    generation: int
    completed: bool
    status: str
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def items(self) -> Tuple[GeneratedPlanItem, ...]:
        return self.candidate.items

    @property
    def total_points(self) -> int:
        return self.candidate.total_points

    @property
    def average_grade(self) -> float:
        return self.candidate.average_grade

    @property
    def score(self) -> float:
        return self.candidate.score

def _empty_points() -> np.ndarray:
    return np.empty((0, 4), dtype=float)

def _point_row(p: Any) -> Optional[Tuple[float, float, float, float]]:
    """One x, y, z, w row, with w = 0 for xyz triples. None when malformed."""
    if isinstance(p, Point):
        values = (p.x, p.y, p.z, p.w)
    else:
        try:
            values = tuple(p)
        except TypeError:
            return None
    if len(values) == 3:
        values = values + (0.0,)
    if len(values) < 4:
        return None
    try:
        return tuple(float(v) for v in values[:4])
    except (TypeError, ValueError):
        return None

def as_point_array(points: Any) -> np.ndarray:
    """
    Converts a point supply into an (N, 4) float array of x, y, z, w.
    Accepts an ndarray, a sequence of Point or tuples, or a DataFrame with
    x/y/z(/w) columns. Missing grades read as 0. Malformed rows and rows
    with non-finite values are dropped; unusable input gives an empty array.
    """
    if points is None:
        return _empty_points()

    arr = None
    if hasattr(points, "columns"):
        if not all(c in points.columns for c in POINT_COLUMNS[:3]):
            logger.warning("Point frame has no x/y/z columns: %s", list(points.columns))
            return _empty_points()
        columns = [c for c in POINT_COLUMNS if c in points.columns]
        points = list(points[columns].itertuples(index=False, name=None))
    elif isinstance(points, np.ndarray):
        try:
            arr = np.asarray(points, dtype=float)
        except (TypeError, ValueError):
            points = points.tolist()

    if arr is None:
        try:
            rows = [_point_row(p) for p in points]
        except TypeError:
            logger.warning("Ignoring non-iterable point supply of type %s", type(points).__name__)
            return _empty_points()
        kept = [r for r in rows if r is not None]
        if len(kept) < len(rows):
            logger.warning("Dropped %d malformed point records", len(rows) - len(kept))
        arr = np.asarray(kept, dtype=float).reshape(-1, 4)

    if arr.size == 0:
        return _empty_points()
    if arr.ndim != 2 or arr.shape[1] < 3:
        logger.warning("Ignoring point array of shape %s", arr.shape)
        return _empty_points()
    if arr.shape[1] == 3:
        arr = np.column_stack((arr, np.zeros(len(arr))))

    arr = arr[:, :4]
    finite = np.isfinite(arr).all(axis=1)
    if not finite.all():
        arr = arr[finite]
    return arr

def coerce_plan_item(item: PlanItem) -> PlanItem:
    """
    Non-finite fields become 0 and quantity is rounded to a count >= 0.
    The angle keeps its raw value; bearings wrap where they are looked up.
    """
    return replace(
        item,
        angle=_finite_or(item.angle, 0.0),
        quantity=int(max(0, round_half_up(_finite_or(item.quantity, 0.0))))
    )

def normalize_plan_item(item: PlanItem) -> PlanItem:
    """Stored form of a plan item: coerced, angle rounded and clamped to [0, 360]."""
    item = coerce_plan_item(item)
    return replace(item, angle=int(_clamp(round_half_up(item.angle), 0, ANGLE_COUNT)))
