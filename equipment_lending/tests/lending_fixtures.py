import os
import sys
from datetime import date, datetime, timedelta
from pathlib import Path


os.environ.setdefault("LENDING_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import SessionLocalLending, engine_lending
from models.lending_models import Equipment, LabUser


def reset_schema() -> None:
    Base.metadata.drop_all(bind=engine_lending)
    Base.metadata.create_all(bind=engine_lending)


def open_session():
    return SessionLocalLending()


def in_days(days: int) -> date:
    return date.today() + timedelta(days=days)


def seed_equipment(db, total: int = 10, available: int | None = None, name: str = "Dell Laptop") -> Equipment:
    equipment = Equipment(
        EquipmentName=name,
        Category="Computers",
        TotalQuantity=total,
        AvailableQuantity=total if available is None else available,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(equipment)
    db.commit()
    return equipment


def seed_user(db, full_name: str, role: str = "STUDENT") -> LabUser:
    user = LabUser(FullName=full_name, Email=None, Role=role, IsActive=True, CreatedDate=datetime.now())
    db.add(user)
    db.commit()
    return user
