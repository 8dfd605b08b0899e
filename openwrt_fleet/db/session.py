from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from openwrt_fleet.core.config import get_settings

# Models inherit from this Base; import openwrt_fleet.models before create_all
Base = declarative_base()


def make_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # worker threads of the device queue share the engine
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def make_session_factory(engine):
    # Rows handed out by repositories stay readable after their session closes
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine) -> None:
    from openwrt_fleet import models  # noqa: F401  (registers tables on Base)

    Base.metadata.create_all(bind=engine)


engine = make_engine(get_settings().database_url)
SessionLocal = make_session_factory(engine)

