import pytest
import json
from plan_storage import (
    PAYLOAD_VERSION, StoredPrism, load_stored_prisms, dump_stored_prisms, load_stored_plan,
    dump_stored_plan, stored_prism_to_region_prism, region_prism_to_stored
)
from plan_params import PlanItem, RegionPrism

def square(offset=0.0):
    return [{"x": offset, "y": 0}, {"x": offset + 1, "y": 0}, {"x": offset + 1, "y": 1}, {"x": offset, "y": 1}]

def test_load_prisms_drops_malformed_records():
    payload = {
        "version": PAYLOAD_VERSION,
        "prisms": [
            {"key": "a", "regionId": "region-alpha", "minZ": 0, "maxZ": 5, "footprint": square()},
            {"key": 3, "minZ": -1, "maxZ": 2, "footprint": square(5), "color": "red"},
            {"key": "short", "minZ": 0, "maxZ": 1, "footprint": square()[:2]},
            {"key": "bad-z", "minZ": "high", "maxZ": 1, "footprint": square()},
            {"key": "inf-x", "minZ": 0, "maxZ": 1, "footprint": [{"x": float("inf"), "y": 0}] + square()[1:]},
            {"minZ": 0, "maxZ": 1, "footprint": square()},
            "not a record",
        ]
    }
    prisms = load_stored_prisms(payload)

    assert [p.key for p in prisms] == ["a", "3"]
    assert prisms[0].region_id == "region-alpha"
    assert prisms[1].region_id == "region-3"
    assert prisms[1].min_z == -1

def test_load_prisms_from_json_text():
    raw = json.dumps({"version": 1, "prisms": [{"key": "a", "minZ": 0, "maxZ": 5, "footprint": square()}]})
    prisms = load_stored_prisms(raw)
    assert len(prisms) == 1
    prism = stored_prism_to_region_prism(prisms[0])
    assert prism.footprint == ((0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0))
    assert (prism.min_z, prism.max_z) == (0.0, 5.0)

@pytest.mark.parametrize("raw", [
    None,
    "",
    "{not json",
    json.dumps({"version": 2, "prisms": []}),
    json.dumps({"prisms": []}),
    json.dumps([1, 2, 3]),
])
def test_unreadable_prism_payloads(raw):
    assert load_stored_prisms(raw) == []

def test_dump_prisms_uses_stored_field_names():
    prism = RegionPrism.from_coords([(0, 0), (2, 0), (2, 2)], 1, 4)
    stored = region_prism_to_stored("k", prism)
    data = json.loads(dump_stored_prisms([stored]))

    assert data["version"] == PAYLOAD_VERSION
    record = data["prisms"][0]
    assert record["regionId"] == "region-k"
    assert record["minZ"] == 1.0
    assert record["maxZ"] == 4.0
    assert record["footprint"][1] == {"x": 2.0, "y": 0.0}

    reloaded = load_stored_prisms(json.dumps(data))
    assert stored_prism_to_region_prism(reloaded[0]) == prism

def test_load_plan_normalizes_items():
    payload = {
        "version": 1,
        "items": [
            {"id": "p1", "regionKey": "a", "angle": 44.5, "quantity": 12.4},
            {"id": "p2", "regionKey": 7, "angle": 400, "quantity": -5},
            {"id": "p3", "regionKey": "b", "angle": "north", "quantity": None},
            {"id": "p4", "regionKey": "b"},
            {"regionKey": "a", "angle": 0, "quantity": 1},
            {"id": "p5", "regionKey": "", "angle": 0, "quantity": 1},
            42,
        ]
    }
    plan = load_stored_plan(payload)

    assert [(i.id, i.region_key, i.angle, i.quantity) for i in plan] == [
        ("p1", "a", 45, 12),
        ("p2", "7", 360, 0),
        ("p3", "b", 0, 0),
        ("p4", "b", 0, 0),
    ]

def test_plan_version_mismatch():
    assert load_stored_plan({"version": 0, "items": [{"id": "p1", "regionKey": "a"}]}) == []

def test_dump_plan_normalizes():
    plan = [PlanItem(id="p1", region_key="a", angle=-3.2, quantity=float("nan"))]
    data = json.loads(dump_stored_plan(plan))
    assert data == {"version": 1, "items": [{"id": "p1", "regionKey": "a", "angle": 0, "quantity": 0}]}

    reloaded = load_stored_plan(json.dumps(data))
    assert reloaded == [PlanItem(id="p1", region_key="a", angle=0, quantity=0)]

def test_stored_prism_populates_by_field_name():
    prism = StoredPrism(key="x", min_z=0, max_z=1, footprint=square())
    assert prism.region_id == "region-x"
