"""Database connection and session management."""
from sqlalchemy import create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from points_ingest.config import get_settings

settings = get_settings()

Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Build an engine for the given URL.

    PostgreSQL connections get a pooled engine with a statement timeout;
    SQLite connections are opened for use from worker threads.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        Configured engine
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    db_engine = create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )

    @event.listens_for(db_engine, "connect")
    def set_statement_timeout(dbapi_connection, connection_record):
        """Bound every statement to 30 seconds."""
        cursor = dbapi_connection.cursor()
        cursor.execute("SET statement_timeout = '30s'")
        cursor.close()

    return db_engine


def create_session_factory(db_engine: Engine) -> sessionmaker:
    """Session factory whose objects stay readable after commit."""
    return sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine
    )


engine = create_db_engine(settings.database_url)

SessionLocal = create_session_factory(engine)


def upsert_insert(session: Session, model):
    """
    Dialect-specific INSERT construct that supports ON CONFLICT clauses.

    Args:
        session: Database session the statement will run on
        model: Mapped class to insert into

    Returns:
        An insert statement with ``on_conflict_do_nothing`` available
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Conditional insert not supported for dialect {dialect}")
