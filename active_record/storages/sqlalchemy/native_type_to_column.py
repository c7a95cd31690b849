import enum
import typing
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, Integer, LargeBinary, Numeric, String, Uuid


mapping = {
    int: Integer,
    str: String(255),
    uuid.UUID: Uuid,
    float: Float,
    bool: Boolean,
    datetime: DateTime,
    date: Date,
    Decimal: Numeric,
    bytes: LargeBinary,
    dict: JSON,
    list: JSON,
}


def convert(arg: typing.Type) -> typing.Any:
    if isinstance(arg, type) and issubclass(arg, enum.Enum):
        return String(255)
    try:
        return mapping[arg]
    except KeyError:
        raise TypeError(f"Unsupported type - {arg}")
