"""
Genetic search for an extraction plan.

Each genome holds one (angle, quantity) pair per region. Quantities are kept
summing to the target point count (or the total available, if smaller) and
angles are restricted to each region's valid start bearings. Candidates are
scored by relative point-count error, relative grade error and a small
penalty per active region.
"""
from dataclasses import dataclass, field
from typing import List, Tuple, Dict, Any, Optional, Callable, Sequence
import logging
import math
import time

from plan_params import (
    ANGLE_COUNT, GeneratePlanProgress, GeneratePlanRegion, GeneratePlanRequest,
    GeneratePlanResult, GeneratedPlanCandidate, GeneratedPlanItem, GeneratorParams,
    PlanItem, Region, round_half_up
)
from geometry import circular_distance
from plan_stats import RegionAverageEvaluator

logger = logging.getLogger(__name__)

POINT_ERROR_WEIGHT = 1.4
SPARSITY_PENALTY = 0.0005
TOURNAMENT_SIZE = 4
MAX_INITIAL_ACTIVE_REGIONS = 6
EXTRA_ACTIVE_PROBABILITY = 0.35
QUANTITY_STEP_FRACTION = 0.2
ANGLE_MUTATION_FACTOR = 1.4
TRANSFER_PROBABILITY = 0.35
GRADE_TOLERANCE = 0.02
POINT_TOLERANCE_FRACTION = 0.01
MIN_POINT_TOLERANCE = 2

# Preset used when a request is built from interactive region selections
INTERACTIVE_PARAMS = GeneratorParams(
    population_size=140,
    max_generations=3500,
    report_every_generations=10,
    mutation_rate=0.14,
    elite_count=8,
    stall_generations=700
)

Evaluator = Callable[[Sequence[GeneratedPlanItem]], Tuple[int, float]]

class PlanGenerationStatus:
    IDLE = "idle"
    RUNNING = "running"
    CONVERGED = "converged"
    STALL_EXHAUSTED = "stall_exhausted"
    GENERATION_CAP_REACHED = "generation_cap_reached"
    CANCELLED = "cancelled"

# --- Random source ---

_MASK32 = 0xFFFFFFFF

def _imul(a: int, b: int) -> int:
    return (a * b) & _MASK32

class Mulberry32:
    """
    Mulberry32 32-bit generator. A given seed always produces the same
    sequence, so seeded plan runs are reproducible.
    """

    def __init__(self, seed: int):
        self._state = int(seed) & _MASK32

    def next(self) -> float:
        """Uniform float in [0, 1)."""
        self._state = (self._state + 0x6D2B79F5) & _MASK32
        t = self._state
        t = _imul(t ^ (t >> 15), t | 1)
        t ^= (t + _imul(t ^ (t >> 7), t | 61)) & _MASK32
        return ((t ^ (t >> 14)) & _MASK32) / 4294967296.0

    def int(self, lo: int, hi: int) -> int:
        """Uniform integer in [lo, hi]; lo when the range is empty."""
        if hi <= lo:
            return lo
        return lo + int(math.floor(self.next() * (hi - lo + 1)))

    def choice(self, values: Sequence[Any]) -> Any:
        return values[self.int(0, len(values) - 1)]

# --- Genome ---

@dataclass
class Genome:
    angles: List[int]
    quantities: List[int]

    def copy(self) -> 'Genome':
        return Genome(angles=list(self.angles), quantities=list(self.quantities))

@dataclass
class EvaluatedGenome:
    genome: Genome
    candidate: GeneratedPlanCandidate

@dataclass
class _Problem:
    regions: List[GeneratePlanRegion]
    max_quantities: List[int]
    valid_angles: List[List[int]]
    target_point_count: int
    target_average_grade: float
    params: GeneratorParams
    evaluator: Evaluator = field(repr=False, default=None)

def _is_usable_region(region: GeneratePlanRegion) -> bool:
    try:
        max_quantity = float(region.max_quantity)
        average = float(region.average_grade)
    except (TypeError, ValueError):
        return False
    return (
        math.isfinite(max_quantity)
        and max_quantity > 0
        and math.isfinite(average)
        and isinstance(region.key, str)
        and len(region.key) > 0
        and region.valid_start_angles is not None
        and len(region.valid_start_angles) >= ANGLE_COUNT
    )

def build_valid_angles(region: GeneratePlanRegion) -> List[int]:
    angles = [a for a in range(ANGLE_COUNT) if region.valid_start_angles[a]]
    return angles if angles else [0]

def snap_to_valid_angle(angle: int, valid_angles: Sequence[int]) -> int:
    """Nearest valid bearing by circular distance; first match wins ties."""
    if angle in valid_angles:
        return angle
    best = valid_angles[0]
    best_distance = circular_distance(angle, best)
    for candidate in valid_angles:
        distance = circular_distance(angle, candidate)
        if distance < best_distance:
            best = candidate
            best_distance = distance
    return best

def normalize_genome_to_target(
    quantities: List[int],
    max_quantities: Sequence[int],
    target_point_count: int,
    random: Mulberry32
) -> None:
    """
    Rescales quantities in place so they sum to min(target, total capacity)
    without exceeding any region maximum.
    """
    target = max(0, min(target_point_count, sum(max_quantities)))
    if target == 0:
        for i in range(len(quantities)):
            quantities[i] = 0
        return

    current = sum(quantities)
    if current == 0:
        for i in range(len(quantities)):
            if current >= target:
                break
            room = max_quantities[i] - quantities[i]
            if room <= 0:
                continue
            add = min(room, random.int(1, max(1, target - current)))
            quantities[i] += add
            current += add

    current = sum(quantities)
    if current > 0 and current != target:
        scale = target / current
        for i in range(len(quantities)):
            scaled = round_half_up(quantities[i] * scale)
            quantities[i] = max(0, min(max_quantities[i], scaled))

    current = sum(quantities)
    if current < target:
        indices = list(range(len(quantities)))
        while current < target and indices:
            index = random.choice(indices)
            if max_quantities[index] - quantities[index] <= 0:
                indices.remove(index)
                continue
            quantities[index] += 1
            current += 1
    elif current > target:
        non_zero = [i for i, q in enumerate(quantities) if q > 0]
        while current > target and non_zero:
            index = random.choice(non_zero)
            if quantities[index] <= 0:
                non_zero.remove(index)
                continue
            quantities[index] -= 1
            current -= 1
            if quantities[index] <= 0:
                non_zero.remove(index)

def create_random_genome(problem: _Problem, random: Mulberry32) -> Genome:
    count = len(problem.regions)
    angles = [0] * count
    quantities = [0] * count

    active_count = random.int(1, max(1, min(count, MAX_INITIAL_ACTIVE_REGIONS)))
    for i in range(count):
        angles[i] = random.choice(problem.valid_angles[i])
        if i < active_count or random.next() < EXTRA_ACTIVE_PROBABILITY:
            quantities[i] = random.int(0, max(0, problem.max_quantities[i]))

    normalize_genome_to_target(quantities, problem.max_quantities, problem.target_point_count, random)
    return Genome(angles=angles, quantities=quantities)

def genome_to_items(problem: _Problem, genome: Genome) -> List[GeneratedPlanItem]:
    items = []
    for i, region in enumerate(problem.regions):
        quantity = max(0, min(problem.max_quantities[i], int(genome.quantities[i])))
        if quantity <= 0:
            continue
        angle = max(0, min(ANGLE_COUNT - 1, int(genome.angles[i])))
        items.append(GeneratedPlanItem(region_key=region.key, angle=angle, quantity=quantity))
    return items

def score_outcome(
    total_points: int,
    average_grade: float,
    active_items: int,
    target_point_count: int,
    target_average_grade: float
) -> float:
    point_error = abs(total_points - target_point_count) / max(1, target_point_count)
    grade_error = abs(average_grade - target_average_grade) / max(1.0, abs(target_average_grade))
    score = point_error * POINT_ERROR_WEIGHT + grade_error + active_items * SPARSITY_PENALTY
    return score if math.isfinite(score) else math.inf

def evaluate_genome(problem: _Problem, genome: Genome) -> GeneratedPlanCandidate:
    items = genome_to_items(problem, genome)
    total_points, average_grade = problem.evaluator(items)
    score = score_outcome(
        total_points, average_grade, len(items),
        problem.target_point_count, problem.target_average_grade
    )
    return GeneratedPlanCandidate(
        items=tuple(items),
        total_points=int(total_points),
        average_grade=float(average_grade),
        score=score
    )

def tournament_select(
    population: Sequence[EvaluatedGenome],
    random: Mulberry32,
    size: int = TOURNAMENT_SIZE
) -> EvaluatedGenome:
    best = None
    for _ in range(size):
        selected = random.choice(population)
        if best is None or selected.candidate.score < best.candidate.score:
            best = selected
    return best

def crossover(problem: _Problem, a: Genome, b: Genome, random: Mulberry32) -> Genome:
    """
    Per region, one parent donates the angle and the other the quantity.
    """
    count = len(problem.regions)
    angles = [0] * count
    quantities = [0] * count
    for i in range(count):
        if random.next() < 0.5:
            angle_source, quantity_source = a, b
        else:
            angle_source, quantity_source = b, a
        angles[i] = snap_to_valid_angle(angle_source.angles[i], problem.valid_angles[i])
        quantities[i] = max(0, min(problem.max_quantities[i], quantity_source.quantities[i]))
    return Genome(angles=angles, quantities=quantities)

def mutate(problem: _Problem, genome: Genome, random: Mulberry32) -> None:
    rate = problem.params.mutation_rate
    count = len(problem.regions)

    for i in range(count):
        max_quantity = problem.max_quantities[i]
        if random.next() < rate:
            max_step = max(1, round_half_up(max_quantity * QUANTITY_STEP_FRACTION))
            delta = random.int(-max_step, max_step)
            genome.quantities[i] = max(0, min(max_quantity, genome.quantities[i] + delta))

        if random.next() < rate * ANGLE_MUTATION_FACTOR:
            genome.angles[i] = random.choice(problem.valid_angles[i])

    if count > 1 and random.next() < TRANSFER_PROBABILITY:
        source = random.int(0, count - 1)
        destination = random.int(0, count - 1)
        if source != destination and genome.quantities[source] > 0:
            amount = random.int(1, genome.quantities[source])
            room = max(0, problem.max_quantities[destination] - genome.quantities[destination])
            moved = min(amount, room)
            genome.quantities[source] -= moved
            genome.quantities[destination] += moved

    normalize_genome_to_target(genome.quantities, problem.max_quantities, problem.target_point_count, random)

def is_converged(best: GeneratedPlanCandidate, target_point_count: int, target_average_grade: float) -> bool:
    point_tolerance = max(MIN_POINT_TOLERANCE, round_half_up(target_point_count * POINT_TOLERANCE_FRACTION))
    points_ok = abs(best.total_points - target_point_count) <= point_tolerance
    grade_ok = abs(best.average_grade - target_average_grade) <= GRADE_TOLERANCE
    return points_ok and grade_ok

def _sort_population(population: List[EvaluatedGenome]) -> None:
    population.sort(key=lambda e: e.candidate.score)

def _build_problem(request: GeneratePlanRequest, evaluator: Optional[Evaluator]) -> _Problem:
    regions = [r for r in request.regions if _is_usable_region(r)]
    try:
        target_points = float(request.target_point_count)
    except (TypeError, ValueError):
        target_points = 0.0
    target_points = max(0, round_half_up(target_points)) if math.isfinite(target_points) else 0
    try:
        target_grade = float(request.target_average_grade)
    except (TypeError, ValueError):
        target_grade = 0.0
    if not math.isfinite(target_grade):
        target_grade = 0.0

    if evaluator is None:
        evaluator = RegionAverageEvaluator({r.key: float(r.average_grade) for r in regions})

    return _Problem(
        regions=regions,
        max_quantities=[max(0, round_half_up(float(r.max_quantity))) for r in regions],
        valid_angles=[build_valid_angles(r) for r in regions],
        target_point_count=target_points,
        target_average_grade=target_grade,
        params=(request.params or GeneratorParams()).clamped(),
        evaluator=evaluator
    )

def generate_plan(
    request: GeneratePlanRequest,
    on_progress: Optional[Callable[[GeneratePlanProgress], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    on_yield: Optional[Callable[[int], None]] = None,
    evaluator: Optional[Evaluator] = None
) -> GeneratePlanResult:
    """
    Runs the genetic search and returns the best candidate found.

    should_stop is polled once per generation; when it returns True the run
    ends with completed=False. on_yield is called every
    yield_every_generations generations as a cooperative pause point.
    evaluator maps plan items to (total points, average grade); by default
    each region contributes its average grade.
    """
    problem = _build_problem(request, evaluator)
    params = problem.params
    diagnostics: Dict[str, Any] = {
        "input_regions": len(request.regions),
        "usable_regions": len(problem.regions),
        "params": params,
        "target_point_count": problem.target_point_count,
        "target_average_grade": problem.target_average_grade
    }

    if len(problem.regions) < len(request.regions):
        logger.info(
            "Ignoring %d of %d regions with unusable quantity, grade, key or angle table",
            len(request.regions) - len(problem.regions), len(request.regions)
        )

    if not problem.regions:
        diagnostics["status"] = PlanGenerationStatus.CONVERGED
        diagnostics["generations"] = 0
        return GeneratePlanResult(
            candidate=GeneratedPlanCandidate(items=(), total_points=0, average_grade=0.0, score=math.inf),
            generation=0,
            completed=True,
            status=PlanGenerationStatus.CONVERGED,
            diagnostics=diagnostics
        )

    seed = request.random_seed
    if seed is None:
        seed = int(time.time() * 1000)
    diagnostics["seed"] = int(seed) & _MASK32
    random = Mulberry32(seed)

    population: List[EvaluatedGenome] = []
    for _ in range(params.population_size):
        genome = create_random_genome(problem, random)
        population.append(EvaluatedGenome(genome=genome, candidate=evaluate_genome(problem, genome)))
    _sort_population(population)

    best = population[0]
    last_improvement = 0
    generation = 0
    status = PlanGenerationStatus.GENERATION_CAP_REACHED

    if on_progress:
        on_progress(GeneratePlanProgress(generation=0, best=best.candidate))

    for generation in range(1, params.max_generations + 1):
        if should_stop and should_stop():
            generation -= 1
            status = PlanGenerationStatus.CANCELLED
            break

        next_population = [
            EvaluatedGenome(genome=elite.genome.copy(), candidate=elite.candidate)
            for elite in population[:params.elite_count]
        ]

        while len(next_population) < params.population_size:
            parent_a = tournament_select(population, random)
            parent_b = tournament_select(population, random)
            child = crossover(problem, parent_a.genome, parent_b.genome, random)
            mutate(problem, child, random)
            next_population.append(EvaluatedGenome(genome=child, candidate=evaluate_genome(problem, child)))

        _sort_population(next_population)
        population = next_population

        if population[0].candidate.score < best.candidate.score:
            best = population[0]
            last_improvement = generation

        if on_progress and generation % params.report_every_generations == 0:
            on_progress(GeneratePlanProgress(generation=generation, best=best.candidate))

        if is_converged(best.candidate, problem.target_point_count, problem.target_average_grade):
            status = PlanGenerationStatus.CONVERGED
            break

        if generation - last_improvement > params.stall_generations:
            status = PlanGenerationStatus.STALL_EXHAUSTED
            break

        if on_yield and generation % params.yield_every_generations == 0:
            on_yield(generation)

    completed = status != PlanGenerationStatus.CANCELLED
    diagnostics["status"] = status
    diagnostics["generations"] = generation
    diagnostics["last_improvement_generation"] = last_improvement

    logger.info(
        "Plan generation %s after %d generations: score=%.4f points=%d grade=%.3f",
        status, generation, best.candidate.score, best.candidate.total_points, best.candidate.average_grade
    )

    return GeneratePlanResult(
        candidate=best.candidate,
        generation=generation,
        completed=completed,
        status=status,
        diagnostics=diagnostics
    )

# --- Request and plan conversion ---

def build_generate_plan_request(
    regions: Sequence[Region],
    target_point_count: float,
    target_average_grade: float,
    random_seed: Optional[int] = None,
    params: Optional[GeneratorParams] = None
) -> Optional[GeneratePlanRequest]:
    """
    Builds an optimizer request from regions that carry a valid-angle table.
    Returns None when no region qualifies.
    """
    request_regions = [
        GeneratePlanRegion(
            key=region.key,
            max_quantity=max(0, round_half_up(region.point_count)),
            average_grade=region.avg_w,
            valid_start_angles=list(region.valid_start_angles)
        )
        for region in regions
        if region.valid_start_angles
    ]
    if not request_regions:
        return None

    target_points = float(target_point_count) if target_point_count is not None else 0.0
    target_grade = float(target_average_grade) if target_average_grade is not None else 0.0

    return GeneratePlanRequest(
        regions=request_regions,
        target_point_count=max(0, round_half_up(target_points)) if math.isfinite(target_points) else 0,
        target_average_grade=target_grade if math.isfinite(target_grade) else 0.0,
        params=params or INTERACTIVE_PARAMS,
        random_seed=random_seed
    )

def candidate_to_plan_items(candidate: GeneratedPlanCandidate) -> List[PlanItem]:
    return [
        PlanItem(
            id=f"ga-preview-{item.region_key}-{index}",
            region_key=item.region_key,
            angle=item.angle,
            quantity=item.quantity
        )
        for index, item in enumerate(i for i in candidate.items if i.quantity > 0)
    ]

def materialize_generated_plan(
    candidate: GeneratedPlanCandidate,
    region_keys: Sequence[str],
    id_factory: Callable[[], str]
) -> List[PlanItem]:
    """Keeps items on known regions and gives each a fresh plan item id."""
    known = set(region_keys)
    plan = []
    for item in candidate_to_plan_items(candidate):
        if item.region_key not in known:
            continue
        item.id = id_factory()
        plan.append(item)
    return plan
