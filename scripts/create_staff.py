#!/usr/bin/env python
"""Create (or reactivate) a staff member in MongoDB and print a bearer token."""
import argparse
import asyncio
from datetime import datetime, timezone

from motor.motor_asyncio import AsyncIOMotorClient

from tradein.core.config import settings
from tradein.core.database import STAFF_COLLECTION
from tradein.routers.auth import create_access_token, normalize_email
from tradein.services.snapshot_builder import to_js_iso


async def create_staff(email: str, name: str, role: str):
    client = AsyncIOMotorClient(settings.mongodb_uri, tz_aware=True)
    db = client[settings.mongodb_database]
    staff = db[STAFF_COLLECTION]

    email = normalize_email(email)
    now = to_js_iso(datetime.now(timezone.utc))

    await staff.update_one(
        {'email': email},
        {
            '$set': {
                'name': name or email,
                'role': role,
                'active': True,
                'updatedAt': now,
            },
            '$setOnInsert': {
                'email': email,
                'permissions': {'pricing': True, 'tradeIn': True, 'readOnly': False},
                'createdAt': now,
                'createdBy': 'scripts/create_staff.py',
            },
        },
        upsert=True,
    )
    client.close()

    print(f'Staff member ready: {email} ({role})')
    print(f'Bearer token: {create_access_token(email)}')


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Create a trade-in staff member')
    parser.add_argument('email')
    parser.add_argument('--name', default=None)
    parser.add_argument('--role', choices=['admin', 'manager', 'staff'], default='admin')
    args = parser.parse_args()
    asyncio.run(create_staff(args.email, args.name, args.role))
