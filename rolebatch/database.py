from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from rolebatch.db_models import Base


def build_session_factory(database_url: str, *, timeout_seconds: float | None = None) -> sessionmaker[Session]:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if timeout_seconds is not None:
            connect_args["timeout"] = timeout_seconds

    engine = create_engine(database_url, future=True, connect_args=connect_args)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False)
