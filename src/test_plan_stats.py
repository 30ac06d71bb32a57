import pytest
import math
import numpy as np
from plan_stats import (
    compute_region_stats, compute_plan_stats, create_extraction_footprint, extract_from_pool,
    estimate_plan_outcome, RegionAverageEvaluator, SimulatedExtractionEvaluator
)
from plan_params import GeneratedPlanItem, PlanItem, Region, RegionPrism

@pytest.fixture
def prism():
    return RegionPrism.from_coords([(-2, -2), (2, -2), (2, 2), (-2, 2)], 0, 10)

@pytest.fixture
def points():
    # Grades 10, 6, 2 spread along x
    return np.array([
        (1.0, 0.0, 5.0, 10.0),
        (0.0, 0.0, 5.0, 6.0),
        (-1.0, 0.0, 5.0, 2.0),
    ])

@pytest.fixture
def region(prism):
    valid = [True] * 360
    valid[180] = False
    return Region(key="r1", prism=prism, region_id="region-r1", point_count=3, avg_w=6.0, valid_start_angles=valid)

def test_region_stats(points):
    stats = compute_region_stats(points)
    assert stats == {"point_count": 3, "min_w": 2.0, "max_w": 10.0, "avg_w": 6.0}

def test_region_stats_empty():
    stats = compute_region_stats(np.empty((0, 4)))
    assert stats["point_count"] == 0
    assert stats["avg_w"] == 0.0

def test_sequential_extraction(region, points):
    plan = [
        PlanItem(id="first", region_key="r1", angle=0, quantity=2),
        PlanItem(id="second", region_key="r1", angle=180, quantity=2),
    ]
    stats = compute_plan_stats([region], plan, points)

    first = stats.outcome_by_item_id["first"]
    assert first.extracted_point_count == 2
    assert first.extracted_average_grade == pytest.approx(8.0)
    assert first.invalid_start is False
    assert first.region_point_count == 3
    assert first.region_average_grade == pytest.approx(6.0)
    assert first.region_id == "region-r1"

    second = stats.outcome_by_item_id["second"]
    assert second.extracted_point_count == 1
    assert second.extracted_average_grade == pytest.approx(2.0)
    assert second.invalid_start is True

    assert stats.grand_total.extracted_point_count == 3
    assert stats.grand_total.average_grade == pytest.approx(6.0)
    assert stats.invalid_start_by_item_id == {"first": False, "second": True}

    assert sorted(stats.extracted_points_by_item_id["first"][:, 3].tolist()) == [6.0, 10.0]
    assert stats.extracted_points_by_item_id["second"][:, 3].tolist() == [2.0]

def test_extraction_footprints(region, points):
    plan = [
        PlanItem(id="first", region_key="r1", angle=0, quantity=2),
        PlanItem(id="second", region_key="r1", angle=180, quantity=2),
    ]
    stats = compute_plan_stats([region], plan, points)

    # First item reaches x = 0, leaving the x >= 0 half
    first = stats.extraction_footprint_by_item_id["first"]
    assert first is not None
    assert first.area == pytest.approx(8.0)

    # Second item reaches x = -1 from the other side
    second = stats.extraction_footprint_by_item_id["second"]
    assert second is not None
    assert second.area == pytest.approx(4.0)
    assert len(second.exterior.coords) - 1 >= 3

def test_footprint_absent_when_nothing_taken(prism):
    assert create_extraction_footprint(prism, 0, np.empty((0, 4))) is None

def test_footprint_absent_when_clip_degenerates(prism):
    # Points beyond the footprint push the clip line past every vertex
    taken = np.array([(5.0, 0.0, 5.0, 1.0)])
    assert create_extraction_footprint(prism, 0, taken) is None

def test_zero_quantity_extracts_nothing(region, points):
    plan = [PlanItem(id="a", region_key="r1", angle=90, quantity=0)]
    stats = compute_plan_stats([region], plan, points)
    outcome = stats.outcome_by_item_id["a"]
    assert outcome.extracted_point_count == 0
    assert outcome.extracted_average_grade == 0.0
    assert stats.extraction_footprint_by_item_id["a"] is None
    assert stats.grand_total.extracted_point_count == 0

def test_plan_items_are_normalized(region, points):
    # 359.6 rounds to 360 which maps onto bearing 0
    plan = [
        PlanItem(id="a", region_key="r1", angle=359.6, quantity=1.4),
        PlanItem(id="b", region_key="r1", angle=float("nan"), quantity=-3),
    ]
    stats = compute_plan_stats([region], plan, points)
    a = stats.outcome_by_item_id["a"]
    assert a.extracted_point_count == 1
    assert a.extracted_average_grade == pytest.approx(10.0)
    assert stats.outcome_by_item_id["b"].extracted_point_count == 0

def test_unknown_region_is_skipped(region, points):
    plan = [PlanItem(id="x", region_key="missing", angle=0, quantity=5)]
    stats = compute_plan_stats([region], plan, points)
    assert "x" not in stats.outcome_by_item_id
    assert stats.grand_total.extracted_point_count == 0

def test_empty_inputs(region, points):
    assert compute_plan_stats([region], [], points).outcome_by_item_id == {}
    assert compute_plan_stats([], [PlanItem(id="a", region_key="r1")], points).outcome_by_item_id == {}
    empty = compute_plan_stats([region], [PlanItem(id="a", region_key="r1", quantity=1)], np.empty((0, 4)))
    assert empty.grand_total.extracted_point_count == 0
    assert empty.grand_total.average_grade == 0.0

def test_points_outside_z_range_are_ignored(region, points):
    extra = np.vstack([points, [(1.5, 0.0, 50.0, 99.0)]])
    plan = [PlanItem(id="a", region_key="r1", angle=0, quantity=1)]
    stats = compute_plan_stats([region], plan, extra)
    assert stats.outcome_by_item_id["a"].extracted_average_grade == pytest.approx(10.0)
    assert stats.outcome_by_item_id["a"].region_point_count == 3

def test_extract_from_pool_orders_by_depth(points):
    taken, remaining = extract_from_pool(points, (0.0, 0.0), 180, 1)
    assert taken[:, 3].tolist() == [2.0]
    assert len(remaining) == 2

    taken, remaining = extract_from_pool(points, (0.0, 0.0), 0, 10)
    assert taken[:, 3].tolist() == [10.0, 6.0, 2.0]
    assert len(remaining) == 0

def test_estimate_plan_outcome():
    items = [
        GeneratedPlanItem(region_key="a", angle=45, quantity=80),
        GeneratedPlanItem(region_key="b", angle=90, quantity=80),
        GeneratedPlanItem(region_key="c", angle=0, quantity=0),
    ]
    total, average = estimate_plan_outcome({"a": 1.0, "b": 3.0}, items)
    assert total == 160
    assert average == pytest.approx(2.0)
    assert RegionAverageEvaluator({"a": 1.0, "b": 3.0})(items) == (total, average)
    assert estimate_plan_outcome({}, []) == (0, 0.0)

def test_simulated_evaluator_matches_plan_stats(region, points):
    evaluator = SimulatedExtractionEvaluator([region], points)
    items = [GeneratedPlanItem(region_key="r1", angle=0, quantity=2)]
    total, average = evaluator(items)
    assert total == 2
    assert average == pytest.approx(8.0)

    # Pools are not consumed between calls
    assert evaluator(items) == (total, average)
    assert evaluator([GeneratedPlanItem(region_key="other", angle=0, quantity=2)]) == (0, 0.0)

def test_negative_and_large_angles_wrap(prism, points):
    valid = [True] * 360
    valid[0] = False
    region = Region(key="r1", prism=prism, valid_start_angles=valid)
    plan = [
        PlanItem(id="minus-one", region_key="r1", angle=-1, quantity=1),
        PlanItem(id="wrapped", region_key="r1", angle=721, quantity=1),
        PlanItem(id="full-turn", region_key="r1", angle=360, quantity=1),
    ]
    stats = compute_plan_stats([region], plan, points)

    # -1 reads table index 359 and extracts along bearing 359
    minus_one = stats.outcome_by_item_id["minus-one"]
    assert minus_one.invalid_start is False
    assert minus_one.extracted_average_grade == pytest.approx(10.0)

    # 721 reads index 1; 360 reads index 0
    assert stats.outcome_by_item_id["wrapped"].invalid_start is False
    assert stats.outcome_by_item_id["full-turn"].invalid_start is True

def test_minus_one_matches_bearing_359(region, points):
    a = compute_plan_stats([region], [PlanItem(id="a", region_key="r1", angle=-1, quantity=2)], points)
    b = compute_plan_stats([region], [PlanItem(id="a", region_key="r1", angle=359, quantity=2)], points)
    assert a.outcome_by_item_id["a"] == b.outcome_by_item_id["a"]
    assert a.extraction_footprint_by_item_id["a"].area == pytest.approx(b.extraction_footprint_by_item_id["a"].area)

def test_fractional_bearing_sets_direction(prism):
    # Both bearings share table index 45 but lean toward different points
    pts = np.array([(1.0, 0.0, 5.0, 3.0), (0.0, 1.0, 5.0, 7.0)])
    region = Region(key="r1", prism=prism)
    plan = [
        PlanItem(id="low", region_key="r1", angle=44.6, quantity=1),
    ]
    assert compute_plan_stats([region], plan, pts).outcome_by_item_id["low"].extracted_average_grade == 3.0

    plan = [
        PlanItem(id="high", region_key="r1", angle=45.4, quantity=1),
    ]
    assert compute_plan_stats([region], plan, pts).outcome_by_item_id["high"].extracted_average_grade == 7.0
