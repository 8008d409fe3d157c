from sqlalchemy import create_engine, pool, event
from sqlalchemy.orm import declarative_base, sessionmaker
import os
from dotenv import load_dotenv
import logging

load_dotenv()
logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./catalog.db")


def _engine_options(url: str) -> dict:
    """
    Pool settings per backend

    Server databases get a QueuePool sized from the environment. SQLite keeps
    SQLAlchemy's default pool and allows use from the consumer and sync
    threads.
    """
    options = {
        "pool_pre_ping": True,
        "echo": os.getenv("DB_ECHO", "false").lower() == "true",  # SQL debugging
    }
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        return options

    options.update(
        poolclass=pool.QueuePool,
        pool_size=int(os.getenv("DB_POOL_SIZE", 5)),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", 10)),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", 30)),
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE", 3600)),
    )
    return options


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))


@event.listens_for(engine, "connect")
def receive_connect(dbapi_conn, connection_record):
    logger.debug(f"Database connection established ({engine.url.get_backend_name()})")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Request-scoped session for FastAPI routes

    Usage:
        @router.get("/endpoint")
        def endpoint(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """
    Sessionmaker for work outside a request (rating consumer, bulk sync).
    Callers own the session: commit/rollback and close it themselves.
    """
    return SessionLocal
