"""
Versioned records for persisted region prisms and plans.

Payloads arrive as loosely typed JSON. Each payload is checked for its
version, then every record is validated on its own: records that fail are
dropped and logged, the rest are normalized and kept.
"""
from typing import List, Dict, Any, Optional, Union
import json
import logging
import math

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from plan_params import PlanItem, RegionPrism, normalize_plan_item

logger = logging.getLogger(__name__)

PAYLOAD_VERSION = 1

def _require_finite(value: float) -> float:
    if not math.isfinite(value):
        raise ValueError("must be a finite number")
    return value

class StoredPrismPoint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    x: float
    y: float

    @field_validator("x", "y")
    @classmethod
    def finite_xy(cls, value: float) -> float:
        return _require_finite(value)

class StoredPrism(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    key: str
    region_id: Optional[str] = Field(None, alias="regionId")
    min_z: float = Field(alias="minZ")
    max_z: float = Field(alias="maxZ")
    footprint: List[StoredPrismPoint] = Field(min_length=3)

    @field_validator("key", mode="before")
    @classmethod
    def key_to_str(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("key must be a string or number")
        if isinstance(value, (int, float)):
            if not math.isfinite(value):
                raise ValueError("key must be finite")
            return str(int(value)) if float(value).is_integer() else str(value)
        return value

    @field_validator("min_z", "max_z")
    @classmethod
    def finite_z(cls, value: float) -> float:
        return _require_finite(value)

    @model_validator(mode="after")
    def default_region_id(self) -> 'StoredPrism':
        if not self.key:
            raise ValueError("key must not be empty")
        if not self.region_id:
            self.region_id = f"region-{self.key}"
        return self

class StoredPrismsPayload(BaseModel):
    version: int
    prisms: List[Any]

class StoredPlanItem(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(min_length=1)
    region_key: str = Field(alias="regionKey", min_length=1)
    angle: Any = 0
    quantity: Any = 0

    @field_validator("region_key", mode="before")
    @classmethod
    def region_key_to_str(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
            return str(int(value)) if float(value).is_integer() else str(value)
        return value

class StoredPlanPayload(BaseModel):
    version: int
    items: List[Any]

def _parse_payload(raw: Union[str, bytes, Dict[str, Any], None], model: type) -> Optional[BaseModel]:
    if raw is None or raw == "" or raw == b"":
        return None
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        payload = model.model_validate(data)
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        logger.warning("Discarding unreadable %s: %s", model.__name__, e)
        return None

    if payload.version != PAYLOAD_VERSION:
        logger.warning("Discarding %s with unsupported version %r", model.__name__, payload.version)
        return None
    return payload

def load_stored_prisms(raw: Union[str, bytes, Dict[str, Any], None]) -> List[StoredPrism]:
    payload = _parse_payload(raw, StoredPrismsPayload)
    if payload is None:
        return []

    prisms = []
    for index, record in enumerate(payload.prisms):
        try:
            prisms.append(StoredPrism.model_validate(record))
        except ValidationError as e:
            logger.warning("Dropping stored prism #%d: %s", index, e.errors()[0]["msg"])
    return prisms

def dump_stored_prisms(prisms: List[StoredPrism]) -> str:
    return json.dumps({
        "version": PAYLOAD_VERSION,
        "prisms": [p.model_dump(by_alias=True) for p in prisms]
    })

def stored_prism_to_region_prism(prism: StoredPrism) -> RegionPrism:
    return RegionPrism.from_coords(
        [(p.x, p.y) for p in prism.footprint],
        prism.min_z,
        prism.max_z
    )

def region_prism_to_stored(key: str, prism: RegionPrism, region_id: str = "") -> StoredPrism:
    return StoredPrism(
        key=key,
        region_id=region_id or None,
        min_z=prism.min_z,
        max_z=prism.max_z,
        footprint=[StoredPrismPoint(x=x, y=y) for x, y in prism.footprint]
    )

def load_stored_plan(raw: Union[str, bytes, Dict[str, Any], None]) -> List[PlanItem]:
    payload = _parse_payload(raw, StoredPlanPayload)
    if payload is None:
        return []

    plan = []
    for index, record in enumerate(payload.items):
        try:
            stored = StoredPlanItem.model_validate(record)
        except ValidationError as e:
            logger.warning("Dropping stored plan item #%d: %s", index, e.errors()[0]["msg"])
            continue
        plan.append(normalize_plan_item(PlanItem(
            id=stored.id,
            region_key=stored.region_key,
            angle=stored.angle,
            quantity=stored.quantity
        )))
    return plan

def dump_stored_plan(plan: List[PlanItem]) -> str:
    items = []
    for item in plan:
        item = normalize_plan_item(item)
        items.append({
            "id": item.id,
            "regionKey": item.region_key,
            "angle": item.angle,
            "quantity": item.quantity
        })
    return json.dumps({"version": PAYLOAD_VERSION, "items": items})
