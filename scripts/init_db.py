import os
import sys
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.pdms.models import Base, User  # noqa: E402


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def create_tables(*, database_url: str) -> None:
    """Local/dev shortcut; deployed databases are migrated with `alembic upgrade head`."""
    engine = create_engine(database_url, future=True)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@pdms.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    admin_name = (os.environ.get("ADMIN_NAME") or "Administrator").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///pdms.db").strip()

    with _session_scope(db_url) as s:
        u = s.scalars(select(User).where(User.email == admin_email)).one_or_none()
        if u is None:
            s.add(
                User(
                    email=admin_email,
                    name=admin_name,
                    password_hash=generate_password_hash(admin_password),
                    role="admin",
                    is_active=True,
                )
            )
            print(f"Created admin user {admin_email}", flush=True)
        elif u.role != "admin":
            u.role = "admin"
            print(f"Promoted existing user {admin_email} to admin", flush=True)
        else:
            print(f"Admin user {admin_email} already present", flush=True)


def main() -> None:
    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///pdms.db").strip()
    if db_url.startswith("sqlite"):
        create_tables(database_url=db_url)
    seed_only(database_url=db_url)


if __name__ == "__main__":
    main()
