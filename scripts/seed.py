#!/usr/bin/env python3
"""
Seed script: creates a demo household, its API key, and one recorded decision.
Run after migrations: python scripts/seed.py
"""

import asyncio
import os
import sys
from datetime import datetime, timezone

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text

from decisionos.auth.middleware import hash_api_key
from decisionos.database import async_session_maker
from decisionos.schemas.decision import RecordDecisionRequest
from decisionos.services.feedback import record_decision
from decisionos.storage.repositories import PostgresLedgerStore


API_KEY = "sk_demo_decisionos_12345"  # Demo API key - print this for user
HOUSEHOLD_KEY = "hh-demo"


async def seed():
    async with async_session_maker() as session:
        api_key_hash = hash_api_key(API_KEY)

        # households is not a tenant table.
        result = await session.execute(
            text("SELECT household_key FROM households WHERE api_key_hash = :hash"),
            {"hash": api_key_hash},
        )
        if result.fetchone():
            print("Household already exists, using existing.")
        else:
            await session.execute(
                text("""
                    INSERT INTO households (household_key, name, api_key_hash, created_at)
                    VALUES (:key, :name, :hash, :now)
                """),
                {
                    "key": HOUSEHOLD_KEY,
                    "name": "Demo Household",
                    "hash": api_key_hash,
                    "now": datetime.now(timezone.utc),
                },
            )
            await session.commit()

        store = PostgresLedgerStore(session)
        event = await record_decision(
            store,
            HOUSEHOLD_KEY,
            RecordDecisionRequest(
                meal_id="meal-chicken-stir-fry",
                payload={"title": "Chicken stir fry", "minutes": 25},
            ),
        )
        await session.commit()

    print("Seed complete!")
    print(f"API Key: {API_KEY}")
    print(f"Decision event: {event.id}")
    print("Example: curl -X POST http://localhost:8000/v1/feedback \\")
    print('  -H "Authorization: Bearer ' + API_KEY + '" \\')
    print('  -H "Content-Type: application/json" \\')
    print(f"  -d '{{\"event_id\":\"{event.id}\",\"action\":\"approved\"}}'")


if __name__ == "__main__":
    asyncio.run(seed())
