from sqlmodel import Session, SQLModel, create_engine

from novelctx.core.config import settings
import novelctx.models  # noqa: F401  # ensure model metadata is registered


_CONNECT_ARGS = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
    connect_args=_CONNECT_ARGS,
)


def init_db() -> None:
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
