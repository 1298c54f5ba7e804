"""
Database abstraction layer.

Usage:
    from core.database import get_database_url, create_db_engine

    engine = create_db_engine(get_database_url("chapter_pipeline"))
"""

from .config import get_database_url, create_db_engine
