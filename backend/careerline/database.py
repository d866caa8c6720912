from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base
from sqlalchemy.orm.exc import StaleDataError
import os

from .errors import ConcurrentModification

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./careerline.db")

if DATABASE_URL.startswith("sqlite"):
    sqlite_args = {"check_same_thread": False, "timeout": 30}
else:
    sqlite_args = {}

engine = create_engine(DATABASE_URL, connect_args=sqlite_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def commit_session(db: Session) -> None:
    """Commit one logical operation, rolling the session back if it fails."""
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrentModification(
            "The node was changed by another request; reload and try again"
        ) from exc
    except Exception:
        db.rollback()
        raise
