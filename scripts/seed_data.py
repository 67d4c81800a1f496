#!/usr/bin/env python
"""
Seed script to populate the database with sample data for local development.

Usage:
    python scripts/seed_data.py --buildings 1 --apartments 6
"""

import argparse
from datetime import date
from decimal import Decimal

from building_ledger.config import Base, SessionLocal, engine
from building_ledger.models.models import Apartment, Building
from building_ledger.services.collections import ensure_default_stages
from building_ledger.services.expenses import create_expense


def create_building_bundle(session, index: int, apartments: int) -> Building:
    building = Building(
        name=f"Sample Building {index}",
        address=f"{10 + index} Herzl Street",
        monthly_fee=Decimal("250.00"),
    )
    session.add(building)
    session.flush()

    for number in range(1, apartments + 1):
        session.add(
            Apartment(
                building_id=building.id,
                apartment_number=str(number),
                status="occupied",
                contact_email=f"apt{number}.b{index}@example.com",
                occupancy_start=date.today().replace(day=1),
            )
        )
    session.commit()
    return building


def seed_database(buildings: int, apartments: int) -> None:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        ensure_default_stages(session)

        existing = session.query(Building).count()
        for offset in range(max(buildings, 0)):
            building = create_building_bundle(session, existing + offset + 1, apartments)
            create_expense(
                session,
                building_id=building.id,
                description="Stairwell cleaning",
                amount=Decimal("300.00"),
                expense_date=date.today(),
                category="maintenance",
                actor="seed",
            )
        print(f"Seed complete. Created {buildings} building(s) with {apartments} apartment(s) each.")


def main():
    parser = argparse.ArgumentParser(description="Seed the ledger database with sample data.")
    parser.add_argument("--buildings", type=int, default=1, help="Number of buildings to create")
    parser.add_argument("--apartments", type=int, default=6, help="Apartments per building")
    args = parser.parse_args()
    seed_database(args.buildings, args.apartments)


if __name__ == "__main__":
    main()
