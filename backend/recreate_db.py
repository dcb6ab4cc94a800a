"""
Script to recreate the counter registry database and seed demo data
"""
from sqlalchemy import create_engine

from counter_registry.core.config import settings
from counter_registry.core.database import SessionLocal
from counter_registry.models import Base
from counter_registry.services.seed import seed_demo


def recreate_db():
    print("Recreating counter registry database...")

    engine = create_engine(settings.database_url, pool_pre_ping=True)

    print("Dropping existing tables...")
    Base.metadata.drop_all(bind=engine)

    print("Creating tables...")
    Base.metadata.create_all(bind=engine)

    print("Seeding demo data...")
    db = SessionLocal()
    try:
        seed_demo(db)
    except Exception as e:
        print(f"Error seeding data: {e}")
        db.rollback()
        raise
    finally:
        db.close()

    print("Database recreated successfully!")


if __name__ == "__main__":
    recreate_db()
