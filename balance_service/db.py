import logging
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import create_engine, SQLModel

logger = logging.getLogger(__name__)


def make_engine(database_url: str, echo: bool = False, pool_timeout: float = 5.0, **kwargs) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": pool_timeout})
    else:
        kwargs.setdefault("pool_timeout", pool_timeout)
        kwargs.setdefault("pool_pre_ping", True)
    engine = create_engine(database_url, echo=echo, **kwargs)
    if engine.dialect.name == "sqlite":
        _install_sqlite_hooks(engine, busy_timeout_ms=int(pool_timeout * 1000))
    return engine


def _install_sqlite_hooks(engine: Engine, busy_timeout_ms: int) -> None:
    # SQLite has no SELECT ... FOR UPDATE: take the write lock when the
    # transaction starts instead.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_con, _record):
        dbapi_con.isolation_level = None
        cur = dbapi_con.cursor()
        cur.execute(f"PRAGMA busy_timeout={busy_timeout_ms};")
        cur.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_db(engine: Engine) -> None:
    from .models import CurrentBalance, PastBalance  # noqa
    SQLModel.metadata.create_all(engine)
    logger.info("balance tables ready on %s", engine.url.render_as_string(hide_password=True))
