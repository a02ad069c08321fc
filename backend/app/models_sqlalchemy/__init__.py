from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from app.config import settings

# Use DATABASE_URL exactly as provided by settings so the API, the autopilot
# loop and ad-hoc scripts all talk to the same database.
DATABASE_URL = settings.DATABASE_URL

engine_kwargs = {}

# Configure connection args based on database type
if DATABASE_URL.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    # PostgreSQL connection settings
    engine_kwargs.update(
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,
        pool_timeout=30,
    )

engine = create_engine(
    DATABASE_URL,
    echo=False,  # keep SQL logging off by default in production
    pool_pre_ping=True,
    **engine_kwargs,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create all autopilot tables on the configured engine."""
    from app.models_sqlalchemy import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
