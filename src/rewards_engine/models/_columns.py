from __future__ import annotations

from enum import Enum
from typing import Type

from sqlalchemy import Enum as SqlEnum


def enum_type(enum_cls: Type[Enum], name: str) -> SqlEnum:
    """Persist a str Enum by its value so raw SQL filters read naturally."""

    return SqlEnum(enum_cls, name=name, values_callable=lambda members: [member.value for member in members])
