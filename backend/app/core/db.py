from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from .config import get_settings

settings = get_settings()

# Pydantic v2 AnyUrl needs to be converted to string for SQLAlchemy
engine = create_engine(str(settings.DATABASE_URL), pool_pre_ping=True)
# Records are handed back to async controllers after the session closes
SessionLocal = sessionmaker(
    bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
