from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker
from common.error_handling import ErrorCodes, TransientIOError
from common.settings import Settings

def create_engine_from_settings(settings: Settings, **overrides):
    url = settings.sqlalchemy_url
    kwargs = {"pool_pre_ping": True}
    if url.startswith("mysql"):
        kwargs.update(
            isolation_level="READ COMMITTED",
            pool_timeout=settings.db_pool_timeout_seconds,
            connect_args={"connect_timeout": settings.db_connect_timeout_seconds},
        )
    kwargs.update(overrides)
    return create_engine(url, **kwargs)

def create_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)

@contextmanager
def storage_errors(operation: str):
    """Classify connection loss and pool exhaustion as TransientIOError."""
    try:
        yield
    except PoolTimeoutError as e:
        raise TransientIOError(f"{operation}: connection pool exhausted", e, code=ErrorCodes.TIMEOUT_ERROR)
    except OperationalError as e:
        raise TransientIOError(f"{operation}: storage unavailable", e, code=ErrorCodes.DATABASE_ERROR)
    except DBAPIError as e:
        if e.connection_invalidated:
            raise TransientIOError(f"{operation}: connection lost", e, code=ErrorCodes.DATABASE_ERROR)
        raise
