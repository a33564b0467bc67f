from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional

from pydantic import BaseModel


def utcnow() -> datetime:
    """Timezone-aware UTC now; every persisted timestamp goes through this."""
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class never touches the database itself.
    """

    # Logical collection / table name; subclasses override
    collection_name: ClassVar[str]

    primary_key: ClassVar[Optional[str]] = "id"

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Enums are stored by value so documents stay readable from any client.
        """
        data = self.model_dump(by_alias=True, exclude_none=True, mode="python")
        return {k: v.value if isinstance(v, Enum) else v for k, v in data.items()}

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            default = field.default
            if default is not None and not isinstance(default, (str, int, float, bool)):
                default = getattr(default, "value", None)
            properties[name] = {
                "type": cls._map_type(field.annotation),
                "nullable": not field.is_required(),
                "default": default,
                "description": field.description,
            }
            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator translates these to dialect-specific types.
        """
        origin: Any = getattr(annotation, "__origin__", None)
        if origin is list or origin is tuple or origin is set:
            return "array"
        if origin is dict or annotation is dict:
            return "object"

        # Optional[X] -> X
        args = getattr(annotation, "__args__", None)
        if args and type(None) in args:
            non_null = [a for a in args if a is not type(None)]
            if len(non_null) == 1:
                return DBSerializableModel._map_type(non_null[0])

        if annotation in (bool,):
            return "boolean"
        if annotation in (int,):
            return "integer"
        if annotation in (float,):
            return "number"
        if annotation in (str,):
            return "string"
        if isinstance(annotation, type) and issubclass(annotation, str):
            # str-backed enums
            return "string"

        name = getattr(annotation, "__name__", "object")
        return name.lower()
