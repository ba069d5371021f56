"""Startup script: ensures the remote-store tables exist, then starts uvicorn."""
import sys
import os

from sqlalchemy import inspect

from db import Base, make_engine

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./caloryia.db")


def ensure_tables(database_url: str = DATABASE_URL) -> list:
    """Create any missing remote-store tables (safe to run repeatedly). Returns the names created."""
    if not database_url:
        print("[STARTUP] DATABASE_URL is empty, running local-only.", flush=True)
        return []

    engine = make_engine(database_url)
    try:
        existing = set(inspect(engine).get_table_names())
        missing = [name for name in Base.metadata.tables if name not in existing]
        for name in missing:
            print(f"[STARTUP] Creating {name} table...", flush=True)
        if missing:
            Base.metadata.create_all(bind=engine)
        print("[STARTUP] Database tables verified.", flush=True)
    finally:
        engine.dispose()
    return missing


if __name__ == "__main__":
    ensure_tables()

    # Start uvicorn
    port = os.getenv("PORT", "8000")
    os.execvp(sys.executable, [sys.executable, "-m", "uvicorn", "main:app", "--host", "0.0.0.0", "--port", port])
