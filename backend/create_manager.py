#!/usr/bin/env python3
"""
Script to create a manager user and print an access token for the API
Usage: python create_manager.py manager@example.com "First" "Last"
"""
import sys

from counter_registry.core.database import SessionLocal
from counter_registry.core.roles import UserRole
from counter_registry.core.security import create_token
from counter_registry.models.user import User


def create_manager(email: str, first_name: str = "", last_name: str = ""):
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if user:
            print(f"User {email} already exists with ID: {user.id}")
        else:
            user = User(
                email=email,
                first_name=first_name or None,
                last_name=last_name or None,
                role_slug=UserRole.manager.value,
                role_name="Manager",
            )
            db.add(user)
            db.commit()
            db.refresh(user)
            print(f"Manager created with ID: {user.id}")

        print("\nAccess token:")
        print(create_token(str(user.id)))
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    create_manager(*sys.argv[1:4])
