#!/usr/bin/env python3
"""
Script to create an admin user for the Guideway Booking Platform.

Admins cannot self-register through the API; this is the only way to
create one.
"""

import asyncio
import os
import sys
from getpass import getpass

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from guideway_booking_platform.database import DatabaseManager
from guideway_booking_platform.models.user import User, UserRole
from guideway_booking_platform.utils.auth import get_password_hash


async def create_admin_user():
    """Create an admin user interactively."""
    print("Guideway Booking Platform - Admin User Creation")
    print("=" * 50)

    email = input("Enter admin email: ").strip().lower()
    if not email:
        print("Email is required!")
        return

    first_name = input("Enter first name: ").strip()
    last_name = input("Enter last name: ").strip()
    if not first_name or not last_name:
        print("First and last name are required!")
        return

    password = getpass("Enter password: ").strip()
    if len(password) < 8:
        print("Password must be at least 8 characters!")
        return
    if password != getpass("Confirm password: ").strip():
        print("Passwords do not match!")
        return

    db = DatabaseManager()
    try:
        print("\nInitializing database connection...")
        await db.initialize()

        async with db.get_session() as session:
            existing_user = (await session.execute(
                select(User).where(User.email == email)
            )).scalar_one_or_none()

            if existing_user:
                print(f"User with email {email} already exists!")
                make_admin = input("Make existing user an admin? (y/N): ").strip().lower()
                if make_admin == "y":
                    existing_user.role = UserRole.ADMIN
                    print(f"User {email} is now an admin!")
                return

            admin_user = User(
                email=email,
                first_name=first_name,
                last_name=last_name,
                password_hash=get_password_hash(password),
                role=UserRole.ADMIN,
                is_active=True,
                is_verified=True
            )
            session.add(admin_user)
            await session.flush()

            print("Admin user created successfully!")
            print(f"   Email: {admin_user.email}")
            print(f"   Name: {admin_user.full_name}")
            print(f"   ID: {admin_user.id}")
    except SQLAlchemyError as e:
        print(f"Error creating admin user: {e}")
        sys.exit(1)
    finally:
        await db.close()


async def list_admin_users():
    """List all admin users."""
    print("Current Admin Users")
    print("=" * 30)

    db = DatabaseManager()
    try:
        await db.initialize(create_tables=False)
        async with db.get_session() as session:
            admin_users = (await session.execute(
                select(User).where(User.role == UserRole.ADMIN).order_by(User.email)
            )).scalars().all()

            if not admin_users:
                print("No admin users found.")
            for user in admin_users:
                status = "Active" if user.is_active else "Inactive"
                print(f"{user.email}")
                print(f"   Name: {user.full_name}")
                print(f"   Status: {status}")
                print(f"   ID: {user.id}")
                print()
    except SQLAlchemyError as e:
        print(f"Error listing admin users: {e}")
        sys.exit(1)
    finally:
        await db.close()


async def main():
    if len(sys.argv) > 1 and sys.argv[1] == "list":
        await list_admin_users()
    else:
        await create_admin_user()


if __name__ == "__main__":
    print("Usage:")
    print("  python miscellaneous/create_admin_user.py        # Create new admin user")
    print("  python miscellaneous/create_admin_user.py list   # List existing admin users")
    print()

    asyncio.run(main())
