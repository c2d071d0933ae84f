"""Database connection and session management."""
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Any, Dict, Generator
import logging

from config import DATABASE_URL
from models import Base, Product

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> Dict[str, Any]:
    """Connection pool settings for the configured backend."""
    if url.startswith("sqlite"):
        # Single shared connection so an in-memory database survives across sessions
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {
        "pool_size": 10,  # Moderate pool size for 50 concurrent users
        "max_overflow": 20,  # Increased overflow for burst traffic
        "pool_pre_ping": True,  # Verify connections before use
        "pool_recycle": 3600,  # Recycle connections after 1 hour
        "pool_timeout": 30,  # Wait max 30 seconds for a connection
    }


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(seed: bool = True) -> None:
    """Initialize database tables and seed data."""
    Base.metadata.create_all(bind=engine)

    if not seed:
        return

    # Seed data if empty
    db = SessionLocal()
    try:
        if db.query(Product).count() == 0:
            products = [
                Product(name="Laptop Pro 14", price=Decimal("999.99"), stock=50, category="Electronics"),
                Product(name="Smartphone X", price=Decimal("599.99"), stock=100, category="Electronics"),
                Product(name="Noise Cancelling Headphones", price=Decimal("99.99"), stock=200, category="Electronics"),
                Product(name="Ergonomic Desk Chair", price=Decimal("199.99"), stock=30, category="Furniture"),
                Product(name="27in Monitor", price=Decimal("299.99"), stock=75, category="Electronics"),
                Product(name="Mechanical Keyboard", price=Decimal("79.99"), stock=150, category="Electronics"),
                Product(name="Wireless Mouse", price=Decimal("29.99"), stock=300, category="Electronics"),
                Product(name="HD Webcam", price=Decimal("89.99"), stock=100, category="Electronics"),
            ]
            db.add_all(products)
            db.commit()
            logger.info("Seeded database with sample products", extra={"count": len(products)})
    finally:
        db.close()
