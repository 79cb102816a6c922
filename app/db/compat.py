"""
עמודות תואמות לסכמה של ה-backend (Node/Prisma) — PostgreSQL + SQLite.

ה-producer כותב סטטוסים כמחרוזות lowercase ("queued", "sent"), לכן
ה-enums נשמרים לפי value ולא לפי שם ה-member, וכ-VARCHAR ולא כ-ENUM
native כדי שהוספת ערך חדש לא תדרוש מיגרציה.
"""
import enum
import uuid
from typing import Type

from sqlalchemy import Enum as SQLEnum


def _enum_values(enum_cls: Type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def str_enum(enum_cls: Type[enum.Enum], name: str, length: int = 20) -> SQLEnum:
    """SQLEnum שנשמר לפי value, ללא CREATE TYPE."""
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=length,
        values_callable=_enum_values,
        validate_strings=True,
    )


def new_id() -> str:
    """מזהה ראשי — UUID כמחרוזת, תואם למזהים שה-backend מייצר."""
    return str(uuid.uuid4())
