import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

# purpose: engine, session factory and request-scoped session dependency for the sales store
# status: active

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./salesgrid.db")

if DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False, "timeout": 30}
else:
    connect_args = {}

engine = create_engine(DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)
# rows handed to fan-out payloads stay readable after the commit
SessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)

Base = declarative_base()


def init_db() -> None:
    from . import models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
