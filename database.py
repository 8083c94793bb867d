from sqlalchemy import create_engine, Column, Integer, String, DateTime, Text, JSON
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config import settings

Base = declarative_base()

# Database Models
class LicenseSetting(Base):
    __tablename__ = "license_settings"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime, nullable=False)

class LicenseCacheEntry(Base):
    __tablename__ = "license_cache"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(JSON, nullable=False)

    # Naive UTC
    expires_at = Column(DateTime, nullable=False, index=True)

class LicenseCheckAttempt(Base):
    __tablename__ = "license_check_attempts"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(30), nullable=False)

    # Attempt Result
    result = Column(String(20), nullable=False)  # success, rejected, transient
    message = Column(Text)

    # Context
    site_identifier = Column(String(255))
    attempted_at = Column(DateTime, nullable=False, index=True)


def make_engine(database_url: str = None):
    url = database_url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine):
    Base.metadata.create_all(bind=engine)
