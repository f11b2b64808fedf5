import argparse
import asyncio
import csv
from pathlib import Path
import sys
from typing import Dict, Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Run from the project root: `python insurance_billing/scripts/data/load_payers.py --location-id loc_1 payers.csv`
sys.path.append(str(Path(__file__).resolve().parents[3]))

from insurance_billing.src.core.config.settings import get_settings
from insurance_billing.src.core.database.models.payments_db import PayerModel
from insurance_billing.src.core.logging_config import setup_logging

logger = structlog.get_logger(__name__)


async def load_payer_rows(session: AsyncSession, location_id: str, rows: Iterable[Dict[str, str]]) -> int:
    """
    Inserts payers for one location. Rows need `payer_id` and `name`; `address` is optional.
    Existing payers (same location and payer_id) are updated in place. Returns the number of rows applied.
    """
    existing = {
        p.payer_id: p for p in (await session.execute(
            select(PayerModel).where(PayerModel.location_id == location_id)
        )).scalars().all()
    }

    applied = 0
    for row in rows:
        try:
            payer_id = row['payer_id'].strip()
            name = row['name'].strip()
        except KeyError as e:
            logger.error("Missing expected column in CSV row", column=str(e), row=row)
            continue
        if not payer_id or not name:
            logger.warn("Skipping payer row with empty payer_id or name", row=row)
            continue

        address = (row.get('address') or '').strip() or None
        payer = existing.get(payer_id)
        if payer is None:
            payer = PayerModel(payer_id=payer_id, location_id=location_id, name=name, address=address)
            session.add(payer)
            existing[payer_id] = payer
        else:
            payer.name = name
            payer.address = address
        applied += 1

    await session.commit()
    return applied


async def load_payers(location_id: str, csv_file_path: Path):
    settings = get_settings()
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    if not csv_file_path.is_file():
        logger.error("Payer CSV file not found.", path=str(csv_file_path))
        return

    logger.info("Starting payer loading process...", csv_file=str(csv_file_path), location_id=location_id)
    try:
        async with session_factory() as session:
            with open(csv_file_path, mode='r', encoding='utf-8', newline='') as csvfile:
                applied = await load_payer_rows(session, location_id, csv.DictReader(csvfile))
        if applied:
            logger.info("Payers loaded.", count=applied, location_id=location_id)
        else:
            logger.warn("No valid payer rows found in CSV to load.")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Load a location's insurance payers from a CSV file.")
    parser.add_argument("csv_file", type=Path, help="CSV with payer_id,name[,address] columns")
    parser.add_argument("--location-id", required=True, help="Tenant the payers belong to")
    args = parser.parse_args()

    setup_logging()
    logger.info("Running payer loading script...")
    asyncio.run(load_payers(args.location_id, args.csv_file))
    logger.info("Payer loading script finished.")
