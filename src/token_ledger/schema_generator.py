from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Optional, Sequence, Type

from .models.account import Account
from .models.audit import AuditEvent
from .models.base import DBSerializableModel
from .models.intent import PurchaseIntent
from .models.ledger import LedgerEntry
from .models.notification import OperatorAlert


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    Account,
    LedgerEntry,
    PurchaseIntent,
    AuditEvent,
    OperatorAlert,
]

_BSON_TYPES = {
    "integer": "long",
    "number": "double",
    "boolean": "bool",
    "string": "string",
    "datetime": "date",
    "object": "object",
    "array": "array",
}


def generate_logical_schema() -> Dict[str, Any]:
    """Logical schema of every persisted model, keyed by collection name."""
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    statements: List[str] = []
    for table_name, table in schema.items():
        pk = table.get("primary_key") or "id"
        required = set(table.get("required", []))
        columns = [
            f'    "{name}" {_sql_type(meta["type"], dialect)} '
            f'{"NOT NULL" if name in required or name == pk else "NULL"}'
            for name, meta in table["properties"].items()
        ]
        columns.append(f'    PRIMARY KEY ("{pk}")')
        statements.append(
            f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        )
    return "\n".join(statements)


def render_mongo_validators(schema: Dict[str, Any]) -> str:
    """
    `$jsonSchema` validators, one per collection, ready for
    `db.command("collMod", name, validator=...)`.
    """
    validators: Dict[str, Any] = {}
    for collection, table in schema.items():
        pk = table.get("primary_key") or "id"
        properties = {}
        for name, meta in table["properties"].items():
            bson_type = _BSON_TYPES.get(meta["type"], "string")
            key = "_id" if name == pk else name
            properties[key] = {"bsonType": [bson_type, "null"] if meta["nullable"] else bson_type}
        required = ["_id" if name == pk else name for name in table.get("required", [])]
        validators[collection] = {
            "$jsonSchema": {"bsonType": "object", "required": required, "properties": properties}
        }
    return json.dumps(validators, indent=2, default=str)


def _sql_type(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "BIGINT"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "datetime":
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type in {"object", "array"}:
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Print the storage schema of the token ledger collections."
    )
    parser.add_argument(
        "--backend",
        choices=["logical", "sql", "mongo"],
        default="logical",
        help="Schema flavour to render.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (postgres, mysql).",
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    elif args.backend == "mongo":
        print(render_mongo_validators(schema))
    else:
        print(json.dumps(schema, indent=2, default=str))


if __name__ == "__main__":
    main()
