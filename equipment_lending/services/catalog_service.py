from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import Equipment
from services.lending_errors import NotFoundError


def find_item(db: Session, equipment_id: int, for_update: bool = False) -> Equipment | None:
    if not for_update:
        return db.get(Equipment, equipment_id)
    stmt = (
        select(Equipment)
        .where(Equipment.EquipmentID == equipment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalars().first()


def require_item(db: Session, equipment_id: int, for_update: bool = False) -> Equipment:
    equipment = find_item(db, equipment_id, for_update=for_update)
    if not equipment:
        raise NotFoundError(f"Equipment not found with id: {equipment_id}")
    return equipment


def adjust_available(db: Session, equipment_id: int, delta: int) -> int:
    """Move the available counter by ``delta``, bounded to ``0..TotalQuantity``.

    Returns the delta that was actually applied. The caller owns the transaction.
    """
    equipment = require_item(db, equipment_id)
    current = int(equipment.AvailableQuantity or 0)
    capacity = int(equipment.TotalQuantity or 0)
    target = min(max(current + int(delta), 0), capacity)
    if target != current:
        equipment.AvailableQuantity = target
        equipment.UpdatedDate = datetime.now()
    return target - current


def serialize_equipment(equipment: Equipment) -> dict:
    return {
        "equipmentID": equipment.EquipmentID,
        "equipmentName": equipment.EquipmentName,
        "category": equipment.Category,
        "conditionStatus": equipment.ConditionStatus,
        "totalQuantity": equipment.TotalQuantity,
        "availableQuantity": equipment.AvailableQuantity,
        "description": equipment.Description,
        "createdDate": equipment.CreatedDate,
        "updatedDate": equipment.UpdatedDate,
    }
