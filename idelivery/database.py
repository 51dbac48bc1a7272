# database.py
import json
from typing import Any, Dict, Optional

from databases import Database
from sqlalchemy import create_engine, MetaData, Table

from idelivery.config import DATABASE_URL

# async database client
database = Database(DATABASE_URL)

# SQLAlchemy sync engine for metadata.create_all()
SYNC_DATABASE_URL = DATABASE_URL.replace("+asyncpg", "").replace("+aiosqlite", "")
engine = create_engine(SYNC_DATABASE_URL)
metadata = MetaData()


def row_to_dict(table: Table, row) -> Optional[Dict[str, Any]]:
    """Copy a fetched record into a plain dict keyed by the table's column names."""
    if row is None:
        return None
    return {column.name: row[column.name] for column in table.c}


def dump_json(value: Any) -> str:
    return json.dumps(value)


def load_json(value: Any, default: Any):
    if value is None:
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return default
    return value
