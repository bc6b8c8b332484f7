#!/usr/bin/env python3
"""Database overview and integrity checks for D4 Media."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base  # noqa: E402
from models import d4_models  # noqa: E402,F401


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_exists(engine: Engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {column["name"] for column in inspect(engine).get_columns(table_name)}


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in Base.metadata.sorted_tables:
        exists = _table_exists(engine, table.name)
        results.append(CheckResult(f"table:{table.name}", exists, "present" if exists else "missing"))
    return results


def run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for table in Base.metadata.sorted_tables:
        if not _table_exists(engine, table.name):
            results.append(CheckResult(f"columns:{table.name}", False, "table missing"))
            continue
        actual = _column_names(engine, table.name)
        missing = [column.name for column in table.columns if column.name not in actual]
        results.append(
            CheckResult(
                f"columns:{table.name}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if _table_exists(engine, "Equipment"):
        checks.append(
            _count_check(
                engine,
                "equipment:counter_out_of_bounds",
                """
                SELECT COUNT(*)
                FROM Equipment
                WHERE CurrentQuantityOut < 0 OR CurrentQuantityOut > AvailableQuantity
                """,
            )
        )

    if _table_exists(engine, "Reservations"):
        checks.append(
            _count_check(
                engine,
                "reservations:studio_overlap",
                """
                SELECT COUNT(*)
                FROM Reservations a
                JOIN Reservations b
                  ON a.StudioRoom = b.StudioRoom
                 AND a.ReservationID < b.ReservationID
                 AND a.WindowStart < b.WindowEnd
                 AND a.WindowEnd > b.WindowStart
                WHERE a.Kind = 'studio_booking' AND b.Kind = 'studio_booking'
                  AND a.Status IN ('confirmed', 'in_progress')
                  AND b.Status IN ('confirmed', 'in_progress')
                """,
            )
        )

    if _table_exists(engine, "ReservationItems") and _table_exists(engine, "Equipment"):
        checks.append(
            _count_check(
                engine,
                "reservationitems:orphan_equipmentid",
                """
                SELECT COUNT(*)
                FROM ReservationItems ri
                LEFT JOIN Equipment e ON e.EquipmentID = ri.EquipmentID
                WHERE ri.EquipmentID IS NOT NULL AND e.EquipmentID IS NULL
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "equipment:out_counter_mismatch",
                """
                SELECT COUNT(*)
                FROM Equipment e
                WHERE e.CurrentQuantityOut < (
                    SELECT COALESCE(SUM(ri.Quantity), 0)
                    FROM ReservationItems ri
                    WHERE ri.EquipmentID = e.EquipmentID AND ri.Status = 'out'
                )
                """,
            )
        )

    if _table_exists(engine, "Invoices"):
        checks.append(
            _count_check(
                engine,
                "invoices:duplicate_reservation",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT ReservationID
                    FROM Invoices
                    WHERE ReservationID IS NOT NULL
                    GROUP BY ReservationID
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    for table in Base.metadata.sorted_tables:
        if not _table_exists(engine, table.name):
            print(f"{table.name}: missing")
            continue
        count = _scalar(engine, f'SELECT COUNT(*) FROM "{table.name}"')
        print(f"{table.name}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if _table_exists(engine, "Reservations"):
        rows = _rows(
            engine,
            """
            SELECT ReservationID, ReservationNumber, Kind, Status, WindowStart, WindowEnd
            FROM Reservations
            ORDER BY ReservationID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("Reservations (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if _table_exists(engine, "NotificationQueue"):
        rows = _rows(
            engine,
            """
            SELECT NotificationID, NotificationType, Attempts, LastError
            FROM NotificationQueue
            WHERE SentAt IS NULL
            ORDER BY NotificationID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("NotificationQueue (unsent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="D4 Media DB overview")
    parser.add_argument("--db-url", default=os.environ.get("D4_MEDIA_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    parser.add_argument("--create", action="store_true", help="create missing tables before checking")
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("D4_MEDIA_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    if args.create:
        Base.metadata.create_all(engine)

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
