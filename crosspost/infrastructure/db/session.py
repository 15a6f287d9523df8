from collections.abc import Generator
from time import perf_counter

from sqlalchemy import create_engine
from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from crosspost.core.config import settings
from crosspost.infrastructure.observability.metrics import observe_db_query


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(settings.sqlalchemy_database_uri, **_engine_options(settings.sqlalchemy_database_uri))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _statement_operation(statement: str) -> str:
    """First SQL keyword, lowercased: ``select``, ``update``, ``delete``..."""
    keyword = statement.lstrip().split(None, 1)[0] if statement.strip() else ""
    return keyword.lower() or "sql"


@event.listens_for(engine, "before_cursor_execute")
def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_started_at_stack", []).append(perf_counter())


@event.listens_for(engine, "after_cursor_execute")
def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    stack = conn.info.get("query_started_at_stack", [])
    if not stack:
        return
    started_at = stack.pop(-1)
    observe_db_query(perf_counter() - started_at, operation=_statement_operation(statement))


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal
