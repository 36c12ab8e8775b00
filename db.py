from collections.abc import Generator
from typing import Annotated

from fastapi import Depends
from sqlmodel import SQLModel, Session, create_engine

from config import settings
from lifecycle import LifecycleEngine, ReservationPolicy
from store import SqlStore

# Postgres in deployment (user=app, password=app, db=db, host=dev_pg),
# anything SQLAlchemy understands via DATABASE_URL.
engine = create_engine(
    settings.database_url,
    echo=settings.sql_echo,
)


def create_db_and_tables() -> None:
    """Create all tables in the database if they don't exist."""
    SQLModel.metadata.create_all(engine)


def get_session() -> Generator[Session, None, None]:
    """Yield a database session for dependency injection."""
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_session)]


def get_lifecycle(session: SessionDep) -> LifecycleEngine:
    """Build a lifecycle engine over this request's session."""
    return LifecycleEngine(
        SqlStore(session),
        policy=ReservationPolicy(settings.reservation_policy),
        cap_requested_quantity=settings.cap_requested_quantity,
    )


LifecycleDep = Annotated[LifecycleEngine, Depends(get_lifecycle)]
