"""
Create the usage accounting tables.

Run this script to set up your database:
    python -m tutor_chat.db.init_db
"""
from sqlalchemy.engine import Engine

from tutor_chat.config import get_settings
from .database import Base, make_engine
from .models import UsageRecord  # noqa: F401  (registers the table on Base)


def init_db(engine: Engine):
    """Create all tables with indexes"""
    Base.metadata.create_all(bind=engine)


if __name__ == "__main__":
    settings = get_settings()
    print("Initializing database...")
    init_db(make_engine(settings.database_url))
    print("✓ Database tables created")
    print("\nTables created:")
    print("  - usage_records (per-tenant daily chat usage)")
    print("\nIndexes created:")
    print("  - UNIQUE(tenant_id, usage_date) on usage_records")
    print("  - INDEX(usage_date) on usage_records")
