"""
Database seeding script for initial users.

Creates a SUPERADMIN and an ADMIN user plus an empty pricing configuration
for development, and prints a bearer token for each user.
Run this script after database is set up but before first use.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.app.db.session import AsyncSessionLocal, engine, Base
from backend.app.models.user import User
from backend.app.models.enums import UserRole
from backend.app.core.jwt import create_user_token
from backend.app.domain.settlement.pricing import PricingStore
import backend.app.main  # noqa: F401  registers all models
from sqlalchemy import select


SEED_USERS = [
    ("superadmin@fieldservice.local", "superadmin", "Super Admin", UserRole.SUPERADMIN),
    ("admin@fieldservice.local", "admin", "Admin", UserRole.ADMIN),
]


async def seed_users():
    """
    Seed initial users with different roles.

    Creates:
    - 1 SUPERADMIN user (finance pages)
    - 1 ADMIN user (work order verification)
    - The financial settings row, if missing
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting user seeding...")

        users = []
        for email, username, full_name, role in SEED_USERS:
            result = await db.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            if user:
                print(f"ℹ️  {role.value} user '{username}' already exists, skipping")
            else:
                user = User(email=email, username=username, full_name=full_name, role=role, is_active=True)
                db.add(user)
                print(f"✅ Created {role.value} user (username: {username})")
            users.append(user)

        await db.commit()

        await PricingStore.ensure_settings(db)
        print("✅ Financial settings ready")

        print("\n🎉 Seeding completed successfully!")
        print("\nBearer tokens:")
        for user in users:
            await db.refresh(user)
            print(f"  - {user.role.value:<10} {user.username}: {create_user_token(user)}")


if __name__ == "__main__":
    asyncio.run(seed_users())
