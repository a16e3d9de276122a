"""Database package for the storefront"""

from database.base import Base
from database.session import SessionLocal, engine, get_db, run_in_transaction, transaction

__all__ = ["Base", "get_db", "SessionLocal", "engine", "transaction", "run_in_transaction"]
