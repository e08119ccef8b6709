"""Live schema introspection and row value conversion for snapshots."""
import base64
import enum
import logging
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from sqlalchemy import MetaData, Table, inspect
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Base

logger = logging.getLogger(__name__)


async def live_tables(db: AsyncSession) -> list[Table]:
    """Every table in the live database.

    Tables known to the ORM come first, in foreign-key dependency order;
    tables that only exist in the database are reflected and appended by name.
    """
    conn = await db.connection()
    return await conn.run_sync(_live_tables)


def _live_tables(sync_conn) -> list[Table]:
    names = set(inspect(sync_conn).get_table_names())
    ordered = [t for t in Base.metadata.sorted_tables if t.name in names]
    known = {t.name for t in ordered}

    reflected = MetaData()
    for name in sorted(names - known):
        try:
            ordered.append(Table(name, reflected, autoload_with=sync_conn))
        except Exception as e:
            logger.warning("Could not reflect table %s: %s", name, e)
    return ordered


def to_json_value(value: Any) -> Any:
    """Convert a column value to a JSON scalar (or JSON column structure)."""
    if value is None or isinstance(value, (bool, int, float, str, dict, list)):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    return str(value)


def row_to_json(row) -> dict[str, Any]:
    return {key: to_json_value(value) for key, value in row.items()}


def _parse_datetime(value: str) -> datetime:
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def coerce_value(column, value: Any) -> Any:
    """Convert a JSON scalar back to the Python type the column expects."""
    if value is None:
        return None
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value

    if python_type is datetime and isinstance(value, str):
        return _parse_datetime(value)
    if python_type is date and isinstance(value, str):
        return _parse_datetime(value).date() if "T" in value or " " in value else date.fromisoformat(value)
    if python_type is time and isinstance(value, str):
        return time.fromisoformat(value)
    if python_type is bool and not isinstance(value, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("t", "true", "1", "yes")
        return bool(value)
    if python_type is int and isinstance(value, str):
        return int(value)
    if python_type is float and isinstance(value, str):
        return float(value)
    if python_type is Decimal and not isinstance(value, Decimal):
        return Decimal(str(value))
    if python_type is bytes and isinstance(value, str):
        return base64.b64decode(value)
    if python_type is uuid.UUID and isinstance(value, str):
        return uuid.UUID(value)
    return value


def coerce_row(table: Table, row: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Values ready for INSERT, plus the names of columns the live table lacks."""
    values: dict[str, Any] = {}
    dropped: list[str] = []
    for key, value in row.items():
        column = table.columns.get(key)
        if column is None:
            dropped.append(key)
            continue
        values[key] = coerce_value(column, value)
    return values, dropped
