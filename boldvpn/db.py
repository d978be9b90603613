from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from boldvpn.config import settings


class Base(DeclarativeBase):
    pass


def get_engine():
    return create_engine(
        settings.database_url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )


SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


def get_db():
    """Centralized database session dependency for FastAPI.

    Yields a database session and ensures it is closed after the request.

    Example:
        @router.get("/devices")
        def list_devices(db: Session = Depends(get_db)):
            return db.query(UserDevice).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
