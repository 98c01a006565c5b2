#!/usr/bin/env python3
"""Booking ledger integrity checks for equipment lending."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from sqlalchemy import create_engine, select, text
from sqlalchemy.orm import Session, sessionmaker

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from models.lending_models import Equipment
from services.availability_service import (
    find_capacity_violations,
    find_coverage_gaps,
    outstanding_quantity,
    reconcile_available_quantity,
)


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _run_item_checks(db: Session, equipment: Equipment) -> list[CheckResult]:
    key = f"equipment:{equipment.EquipmentID}"
    results: list[CheckResult] = []

    outstanding = outstanding_quantity(db, equipment.EquipmentID)
    expected = max(0, int(equipment.TotalQuantity or 0) - outstanding)
    actual = int(equipment.AvailableQuantity or 0)
    results.append(
        CheckResult(
            f"{key}:available_counter",
            actual == expected,
            f"available={actual} expected={expected} outstanding={outstanding}",
        )
    )

    bounded = 0 <= actual <= int(equipment.TotalQuantity or 0)
    results.append(
        CheckResult(
            f"{key}:available_bounds",
            bounded,
            f"available={actual} total={equipment.TotalQuantity}",
        )
    )

    violations = find_capacity_violations(db, equipment.EquipmentID)
    results.append(
        CheckResult(
            f"{key}:daily_capacity",
            not violations,
            "ok" if not violations else ", ".join(f"{row['date']}={row['booked']}" for row in violations),
        )
    )

    gaps = find_coverage_gaps(db, equipment.EquipmentID)
    results.append(
        CheckResult(
            f"{key}:day_coverage",
            not gaps,
            "ok"
            if not gaps
            else ", ".join(f"request {row['requestID']} {row['activeDays']}/{row['expectedDays']}" for row in gaps),
        )
    )
    return results


def main() -> int:
    parser = argparse.ArgumentParser(description="Equipment lending ledger check")
    parser.add_argument("--db-url", default=os.environ.get("LENDING_DB_URL", ""))
    parser.add_argument("--equipment-id", type=int, default=None)
    parser.add_argument("--repair", action="store_true", help="recompute AvailableQuantity from the ledger")
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = create_engine(db_url, pool_pre_ping=True, future=True)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    failures = 0
    with session_factory() as db:
        stmt = select(Equipment).order_by(Equipment.EquipmentID)
        if args.equipment_id is not None:
            stmt = stmt.where(Equipment.EquipmentID == args.equipment_id)
        items = db.execute(stmt).scalars().all()
        if not items:
            print("No equipment rows matched.")
            return 0

        for equipment in items:
            results = _run_item_checks(db, equipment)
            failures += sum(1 for row in results if not row.ok)
            _print_results(f"{equipment.EquipmentName} (#{equipment.EquipmentID})", results)

        if args.repair:
            _print_section("Repair")
            for equipment in items:
                result = reconcile_available_quantity(db, equipment.EquipmentID)
                print(
                    f"equipment:{equipment.EquipmentID} available {result['before']} -> {result['after']}"
                    f" ({'changed' if result['changed'] else 'unchanged'})"
                )
            db.commit()

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
