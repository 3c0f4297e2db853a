"""
Database helper utilities for the relay server.

Provides connection and health information for the configured database.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from bridge.core.config import settings
from bridge.db.session import engine as default_engine

logger = logging.getLogger(__name__)


def get_database_type(database_url: Optional[str] = None) -> str:
    """
    Get the database type from the database URL.

    Returns:
        str: Database type ('sqlite', 'postgresql', etc.)
    """
    url = (database_url or settings.database_url).lower()
    if url.startswith("sqlite"):
        return "sqlite"
    elif url.startswith("postgresql"):
        return "postgresql"
    return url.split("://")[0] if "://" in url else "unknown"


def get_database_info(bind: Optional[Engine] = None) -> Dict[str, Any]:
    """
    Get database connection information and metadata.

    Returns:
        Dict containing database type, connection status, and metadata
    """
    bind = bind or default_engine
    db_type = get_database_type(str(bind.url))
    info: Dict[str, Any] = {
        "type": db_type,
        "connected": False,
        "tables": [],
        "version": None,
        "error": None,
    }

    try:
        with bind.connect() as conn:
            info["connected"] = True
            if db_type == "sqlite":
                info["version"] = conn.execute(text("SELECT sqlite_version()")).scalar()
            elif db_type == "postgresql":
                version_str = conn.execute(text("SELECT version()")).scalar()
                info["version"] = version_str.split()[1] if version_str else "unknown"
            info["tables"] = inspect(bind).get_table_names()
    except Exception as e:
        logger.error(f"Database connection error: {e}")
        info["error"] = str(e)

    return info


def check_database_health(bind: Optional[Engine] = None) -> Dict[str, Any]:
    """
    Perform database health check.

    Returns:
        Dict containing health status and metrics
    """
    health: Dict[str, Any] = {
        "status": "healthy",
        "database_type": get_database_type(),
        "connected": False,
        "table_count": 0,
        "last_error": None,
    }

    db_info = get_database_info(bind)
    health["database_type"] = db_info["type"]
    health["connected"] = db_info["connected"]
    health["table_count"] = len(db_info["tables"])

    if db_info["error"]:
        health["status"] = "unhealthy"
        health["last_error"] = db_info["error"]
    elif "sessions" not in db_info["tables"]:
        health["status"] = "warning"
        health["last_error"] = "Sessions table missing - database may need initialization"

    return health
