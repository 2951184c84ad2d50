from urllib.parse import urlparse
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from fuep_payments.config import settings

# Base for ALL models
Base = declarative_base()


# -----------------------
# DATABASE URL
# -----------------------
def normalize_database_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Please set a valid Postgres URL.")

    parsed = urlparse(url)
    if not (parsed.scheme.startswith("postgresql") or parsed.scheme.startswith("sqlite")):
        raise RuntimeError(
            f"Unsupported DATABASE_URL scheme '{parsed.scheme}'. Use Postgres (or SQLite for development)."
        )

    # Ensure sslmode=require if missing
    if parsed.scheme.startswith("postgresql") and "sslmode=" not in url:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}sslmode=require"
    return url


# -----------------------
# SQLAlchemy Engine
# -----------------------
def make_engine(url: str) -> Engine:
    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        return create_engine(url, future=True, echo=False, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        future=True,
        echo=False,
        pool_pre_ping=True,
        pool_recycle=300,
    )


engine = make_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
