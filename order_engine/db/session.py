from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy import create_engine, event
from order_engine.core.config import settings

class Base(DeclarativeBase): pass

def make_engine(dsn: str):
    if not dsn.startswith("sqlite"):
        return create_engine(dsn, pool_pre_ping=True)

    # SQLite has no row locks: open every transaction with BEGIN IMMEDIATE so
    # writers queue on the database lock instead of failing mid-transaction.
    eng = create_engine(dsn, connect_args={"check_same_thread": False, "timeout": 30})

    @event.listens_for(eng, "connect")
    def _connect(dbapi_conn, _rec):
        dbapi_conn.isolation_level = None

    @event.listens_for(eng, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return eng

engine = make_engine(settings.POSTGRES_DSN)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
