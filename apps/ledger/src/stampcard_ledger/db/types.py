from __future__ import annotations

from enum import Enum
from typing import Type

from sqlalchemy import Enum as SqlEnum


def value_enum(enum_cls: Type[Enum], name: str) -> SqlEnum:
    """Persist enum ``value`` strings so rows match the migration's type labels."""

    return SqlEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )
