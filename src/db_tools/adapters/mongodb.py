"""Async MongoDB backend.

Provides ``MongoBackend``, the MongoDB implementation of the ``Backend``
protocol, on ``pymongo.AsyncMongoClient``.  Raw queries and migration
bodies are JSON (extended JSON) database command documents, e.g.
``{"find": "users", "filter": {"active": true}}``.  Collections have no
declared schema, so columns are inferred by sampling documents.

Backup and restore shell out to ``mongodump`` / ``mongorestore`` with
``--archive --gzip``; the connection URI is handed over in a private
``--config`` file so it never appears on the command line.

Usage:
    from db_tools.adapters.mongodb import MongoBackend

    backend = MongoBackend(profile)
    result = await backend.query('{"find": "users", "limit": 5}')
    await backend.close()
"""

import json
import logging
import re
import tempfile
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from bson import ObjectId, json_util
from pymongo import AsyncMongoClient

from db_tools.adapters.base import BackupResult, MigrationRecord, QueryResult, SearchHit, SearchOptions
from db_tools.adapters.tools import ToolLocator
from db_tools.config.models import BackendKind, ConnectionProfile
from db_tools.crypto import decrypt, encrypt_file, key_path_for, read_key, write_private
from db_tools.errors import DatabaseError, DecryptionError, ValidationError
from db_tools.safety.operations import PlannedOperation
from db_tools.schema.migrations import LEDGER_NAME, MigrationLedger, parse_mongo_operations
from db_tools.schema.models import ColumnInfo, IndexInfo, StateSnapshot, TableState

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 100


def database_from_uri(uri: str) -> str | None:
    """Database name in the path of a MongoDB URI."""
    path = urlsplit(uri).path.lstrip("/")
    return path or None


def parse_command(statement: Any) -> dict:
    """Command document from a dict or an (extended) JSON string."""
    if isinstance(statement, dict):
        return statement
    try:
        document = json_util.loads(statement)
    except (ValueError, TypeError) as e:
        raise ValidationError(
            f"MongoDB queries must be JSON command documents: {e}",
            suggestions=['Example: {"find": "users", "filter": {"active": true}}'],
        ) from e
    if not isinstance(document, dict) or not document:
        raise ValidationError("MongoDB command must be a non-empty JSON object")
    return document


def parse_value(raw: str | None) -> Any:
    """JSON value when *raw* parses as JSON, else the raw string."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def _flatten(document: dict, prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in document.items():
        path = f"{prefix}{key}"
        flat[path] = value
        if isinstance(value, dict):
            flat.update(_flatten(value, path + "."))
    return flat


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, ObjectId):
        return "objectId"
    if isinstance(value, datetime):
        return "date"
    return {int: "int", float: "double", str: "string", dict: "object", list: "array"}.get(type(value), type(value).__name__)


class _MongoTransaction:
    """Runs commands in order.  MongoDB offers no cross-command atomicity here."""

    def __init__(self, db: Any) -> None:
        self._db = db

    async def execute(self, statement: Any, params: dict | None = None) -> QueryResult:
        response = await self._db.command(parse_command(statement))
        return _command_result(response)

    async def insert(self, table: str, row: dict) -> None:
        await self._db[table].insert_one(dict(row))

    async def record_migration(self, name: str, body: str) -> None:
        await self._db[LEDGER_NAME].insert_one(
            {"name": name, "applied_at": datetime.now(timezone.utc), "operations": body}
        )


def _command_result(response: dict) -> QueryResult:
    cursor = response.get("cursor")
    if isinstance(cursor, dict):
        rows = [_serialize_value(d) for d in cursor.get("firstBatch", [])]
        return QueryResult(rows=rows, affected=len(rows))
    affected = response.get("nModified", response.get("n", 0))
    return QueryResult(rows=[_serialize_value(response)], affected=int(affected or 0))


class MongoBackend:
    """MongoDB implementation of the ``Backend`` protocol.

    Args:
        profile: Connection profile (``type == mongodb``).
        database: Database to open instead of the one in the URI.
        tools: Locator for ``mongodump`` / ``mongorestore``.
        **client_kwargs: Forwarded to ``AsyncMongoClient``.
    """

    kind = BackendKind.MONGODB

    def __init__(
        self,
        profile: ConnectionProfile,
        database: str | None = None,
        tools: ToolLocator | None = None,
        **client_kwargs: Any,
    ) -> None:
        self.profile = profile
        self.database: str = database or profile.database or database_from_uri(profile.uri) or "test"
        self.tools = tools or ToolLocator()
        options = {"serverSelectionTimeoutMS": 5000, **client_kwargs}
        self.client: AsyncMongoClient = AsyncMongoClient(profile.uri, **options)
        self.db = self.client[self.database]
        self._closed = False

    def __repr__(self) -> str:
        return f"MongoBackend(project={self.profile.name!r}, database={self.database!r})"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the client.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self.client.close()

    @property
    def closed(self) -> bool:
        return self._closed

    async def ping(self) -> bool:
        response = await self.client.admin.command("ping")
        return bool(response.get("ok"))

    # ------------------------------------------------------------------
    # Queries and metadata
    # ------------------------------------------------------------------

    async def query(self, statement: str, params: dict | None = None) -> QueryResult:
        """Run one command document, or a JSON array of them in order."""
        documents = parse_mongo_operations(statement) if statement.strip().startswith("[") else [parse_command(statement)]
        result = QueryResult()
        for document in documents:
            result = _command_result(await self.db.command(document))
        return result

    async def list_databases(self) -> list[str]:
        return sorted(await self.client.list_database_names())

    async def list_tables(self) -> list[str]:
        return sorted(await self.db.list_collection_names())

    async def table_exists(self, table: str) -> bool:
        return table in await self.db.list_collection_names()

    async def column_exists(self, table: str, column: str) -> bool:
        return await self.db[table].count_documents({column: {"$exists": True}}, limit=1) > 0

    async def get_columns(self, table: str) -> list[ColumnInfo]:
        """Fields seen in a sample of documents, in first-seen order."""
        if not await self.table_exists(table):
            raise DatabaseError(f'Collection "{table}" does not exist', code="42P01")
        documents = await self.db[table].find({}, limit=SAMPLE_SIZE).to_list(SAMPLE_SIZE)
        seen: dict[str, set[str]] = {}
        present: dict[str, int] = {}
        for document in documents:
            for field, value in _flatten(document).items():
                seen.setdefault(field, set()).add(_type_name(value))
                present[field] = present.get(field, 0) + 1
        return [
            ColumnInfo(
                name=field,
                data_type="|".join(sorted(types)),
                is_nullable="null" in types or present[field] < len(documents),
                position=position,
            )
            for position, (field, types) in enumerate(seen.items(), start=1)
        ]

    async def count_records(self, table: str, where: str | None = None) -> int:
        query = parse_command(where) if where else {}
        return await self.db[table].count_documents(query)

    async def table_indexes(self, table: str) -> list[IndexInfo]:
        info = await self.db[table].index_information()
        return [
            IndexInfo(
                name=name,
                columns=[key for key, _ in spec.get("key", [])],
                is_unique=bool(spec.get("unique")),
                definition=json.dumps(spec.get("key", []), default=str),
            )
            for name, spec in info.items()
        ]

    async def snapshot_state(self) -> StateSnapshot:
        tables: dict[str, TableState] = {}
        for name in await self.list_tables():
            tables[name] = TableState(
                name=name,
                columns=await self.get_columns(name),
                row_count=await self.count_records(name),
                indexes=await self.table_indexes(name),
            )
        return StateSnapshot(database=self.database, tables=tables)

    # ------------------------------------------------------------------
    # Backup / Restore
    # ------------------------------------------------------------------

    @contextmanager
    def _uri_config(self) -> Iterator[Path]:
        """Private YAML config holding the URI for mongodump/mongorestore."""
        with tempfile.TemporaryDirectory(prefix="db-tools-") as tmp:
            path = Path(tmp) / "mongo.yaml"
            write_private(path, f"uri: {json.dumps(self.profile.uri)}\n".encode())
            yield path

    def _db_args(self, tool: str) -> list[str]:
        if tool == "mongodump":
            return ["--db", self.database]
        return ["--nsInclude", f"{self.database}.*"]

    async def _run_tool(self, tool_name: str, args: list[str], input: bytes | None = None):
        tool = await self.tools.resolve(tool_name)
        with self._uri_config() as config:
            run = await self.tools.run(
                [tool.path, f"--config={config}", *self._db_args(tool_name), *args],
                input=input,
            )
        if not run.ok:
            raise DatabaseError(f"{tool_name} failed: {run.error_text}", context={"tool": tool.path})
        return run

    async def backup(self, path: Path, encrypt: bool = False, fmt: str = "plain") -> BackupResult:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        warnings = []
        if fmt != "plain":
            warnings.append(f"Format '{fmt}' is ignored for MongoDB; writing a gzip archive")
        await self._run_tool("mongodump", [f"--archive={path}", "--gzip"])

        key_path = None
        if encrypt:
            path, key_path = encrypt_file(path)
        logger.info("Backup of %s written to %s", self.database, path)
        return BackupResult(
            path=path,
            key_path=key_path,
            format="archive",
            size_bytes=path.stat().st_size,
            warnings=warnings,
        )

    @contextmanager
    def _plaintext(self, path: Path, key_path: Path | None) -> Iterator[Path]:
        path = Path(path)
        if not path.exists():
            raise ValidationError(f"Backup file not found: {path}", code="ENOENT")
        if path.suffix != ".enc":
            yield path
            return
        key_path = Path(key_path) if key_path else key_path_for(path)
        if not key_path.exists():
            raise DecryptionError(
                f"Key file not found: {key_path}",
                suggestions=["Pass the key with --key <path>"],
            )
        data = decrypt(path.read_bytes(), read_key(key_path))
        with tempfile.TemporaryDirectory(prefix="db-tools-") as tmp:
            plain = Path(tmp) / path.stem
            plain.write_bytes(data)
            yield plain

    async def describe_backup(self, path: Path, key_path: Path | None = None) -> list[str]:
        with self._plaintext(path, key_path) as plain:
            run = await self._run_tool("mongorestore", [f"--archive={plain}", "--gzip", "--dryRun", "-v"])
        lines = run.stderr.decode("utf-8", errors="replace").splitlines()
        return [line.split("\t", 1)[-1] for line in lines if line.strip()]

    async def restore(
        self,
        path: Path,
        dry_run: bool = False,
        drop_first: bool = False,
        key_path: Path | None = None,
    ) -> bool:
        args = ["--gzip"]
        if drop_first:
            args.append("--drop")
        if dry_run:
            args.append("--dryRun")
        with self._plaintext(path, key_path) as plain:
            await self._run_tool("mongorestore", [f"--archive={plain}", *args])
        logger.info("Restored %s into %s%s", path, self.database, " (dry run)" if dry_run else "")
        return True

    async def dump(self) -> bytes:
        run = await self._run_tool("mongodump", ["--archive", "--gzip"])
        return run.stdout

    async def load_dump(self, data: bytes) -> None:
        await self._run_tool("mongorestore", ["--archive", "--gzip", "--drop"], input=data)

    # ------------------------------------------------------------------
    # Transactions and migrations
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_MongoTransaction]:
        yield _MongoTransaction(self.db)

    async def ensure_migration_ledger(self) -> None:
        await self.db[LEDGER_NAME].create_index("name", unique=True)

    async def track_migration(self, name: str, body: str) -> None:
        await self.db[LEDGER_NAME].update_one(
            {"name": name},
            {"$setOnInsert": {"name": name, "applied_at": datetime.now(timezone.utc), "operations": body}},
            upsert=True,
        )

    async def list_applied_migrations(self) -> list[MigrationRecord]:
        documents = await self.db[LEDGER_NAME].find({}).sort("applied_at", 1).to_list(None)
        return [
            MigrationRecord(name=d["name"], applied_at=d.get("applied_at"), content=d.get("operations"))
            for d in documents
        ]

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, options: SearchOptions) -> list[SearchHit]:
        from db_tools.adapters.postgres import value_matches

        if options.table and not await self.table_exists(options.table):
            raise DatabaseError(f'Collection "{options.table}" does not exist', code="42P01")

        hits: list[SearchHit] = []
        tables = [options.table] if options.table else await self.list_tables()
        for table in tables:
            columns = await self.get_columns(table)
            if options.column:
                columns = [c for c in columns if c.name == options.column] or [
                    ColumnInfo(name=options.column, data_type="string")
                ]
            filters = [f for f in (self._field_filter(c, options) for c in columns) if f]
            if not filters:
                continue
            cursor = self.db[table].find({"$or": filters}, limit=options.limit - len(hits))
            for document in await cursor.to_list(None):
                row = _serialize_value(document)
                flat = _flatten(row)
                matching = [
                    c.name
                    for c in columns
                    if value_matches(flat.get(c.name), _search_type(c.data_type), options)
                ]
                hits.append(SearchHit(table=table, matching_columns=matching, row=row))
            if len(hits) >= options.limit:
                break
        return hits

    @staticmethod
    def _field_filter(column: ColumnInfo, options: SearchOptions) -> dict | None:
        value = options.value
        if value.lower() == "null":
            return {column.name: None}
        kind = _search_type(column.data_type)
        if kind == "numeric":
            try:
                number = float(value)
            except ValueError:
                return None
            return {column.name: int(number) if number.is_integer() else number}
        if kind == "boolean":
            lowered = value.lower()
            if lowered in ("true", "false"):
                return {column.name: lowered == "true"}
            return None
        if kind == "jsonb":
            return None
        if options.exact and not options.regex:
            if options.case_sensitive:
                return {column.name: value}
            return {column.name: {"$regex": f"^{re.escape(value)}$", "$options": "i"}}
        pattern = value if options.regex else re.escape(value)
        return {column.name: {"$regex": pattern, "$options": "" if options.case_sensitive else "i"}}

    # ------------------------------------------------------------------
    # Planned operations
    # ------------------------------------------------------------------

    def plan(self, operation: str, **params: Any) -> PlannedOperation:
        builder = getattr(self, "_plan_" + operation.replace("-", "_"), None)
        if builder is None:
            raise ValidationError(f"'{operation}' is not available for MongoDB projects")
        return builder(**params)

    @staticmethod
    def _commands(name: str, params: dict, documents: list[dict], **kwargs: Any) -> PlannedOperation:
        async def apply(target: "MongoBackend") -> None:
            async with target.transaction() as tx:
                for document in documents:
                    await tx.execute(document)

        return PlannedOperation(
            name,
            params,
            [json_util.dumps(d) for d in documents],
            apply,
            **kwargs,
        )

    @staticmethod
    def _count(table: str, query: dict | None = None):
        async def estimate(target: "MongoBackend") -> int:
            return await target.db[table].count_documents(query or {})

        return estimate

    def _plan_create_table(self, table: str, columns: dict | None = None, **params: Any) -> PlannedOperation:
        return self._commands(
            "create-table", {"table": table, **params}, [{"create": table}], creates=[f"collection {table}"]
        )

    def _plan_add_column(
        self,
        table: str,
        column: str,
        type: str | None = None,
        default: str | None = None,
        not_null: bool = False,
        **params: Any,
    ) -> PlannedOperation:
        missing = {column: {"$exists": False}}
        document = {
            "update": table,
            "updates": [{"q": missing, "u": {"$set": {column: parse_value(default)}}, "multi": True}],
        }
        return self._commands(
            "add-column",
            {"table": table, "column": column, "default": default, "not_null": not_null, **params},
            [document],
            estimate=self._count(table, missing),
            modifies=[f"collection {table} (+ field {column})"],
        )

    def _plan_remove_field(self, table: str, column: str, **params: Any) -> PlannedOperation:
        present = {column: {"$exists": True}}
        document = {"update": table, "updates": [{"q": present, "u": {"$unset": {column: ""}}, "multi": True}]}
        return self._commands(
            "remove-field",
            {"table": table, "column": column, **params},
            [document],
            estimate=self._count(table, present),
            deletes=[f"field {table}.{column}"],
        )

    def _plan_remove_column(self, table: str, column: str, **params: Any) -> PlannedOperation:
        planned = self._plan_remove_field(table, column, **params)
        planned.name = "remove-column"
        return planned

    def _plan_rename_column(self, table: str, column: str, new_name: str, **params: Any) -> PlannedOperation:
        present = {column: {"$exists": True}}
        document = {"update": table, "updates": [{"q": present, "u": {"$rename": {column: new_name}}, "multi": True}]}
        return self._commands(
            "rename-column",
            {"table": table, "column": column, "new_name": new_name, **params},
            [document],
            estimate=self._count(table, present),
            modifies=[f"field {table}.{column} → {new_name}"],
        )

    def _plan_rename_collection(self, table: str, new_name: str, **params: Any) -> PlannedOperation:
        async def apply(target: "MongoBackend") -> None:
            await target.client.admin.command(
                {"renameCollection": f"{target.database}.{table}", "to": f"{target.database}.{new_name}"}
            )

        shown = {"renameCollection": f"{self.database}.{table}", "to": f"{self.database}.{new_name}"}
        return PlannedOperation(
            "rename-collection",
            {"table": table, "new_name": new_name, **params},
            [json.dumps(shown)],
            apply,
            estimate=self._count(table),
            modifies=[f"collection {table} → {new_name}"],
        )

    def _plan_rename_table(self, table: str, new_name: str, **params: Any) -> PlannedOperation:
        planned = self._plan_rename_collection(table, new_name, **params)
        planned.name = "rename-table"
        return planned

    def _plan_create_index(
        self,
        table: str,
        column: str,
        unique: bool = False,
        index_name: str | None = None,
        **params: Any,
    ) -> PlannedOperation:
        index_name = index_name or f"idx_{table}_{column}"
        document = {
            "createIndexes": table,
            "indexes": [{"key": {column: 1}, "name": index_name, "unique": unique}],
        }
        return self._commands(
            "create-index",
            {"table": table, "column": column, "unique": unique, "index_name": index_name, **params},
            [document],
            estimate=self._count(table),
            creates=[f"index {index_name} on {table}.{column}"],
        )

    def _plan_delete_collection(self, table: str, **params: Any) -> PlannedOperation:
        return self._commands(
            "delete-collection",
            {"table": table, **params},
            [{"drop": table}],
            estimate=self._count(table),
            deletes=[f"collection {table}"],
        )

    def _plan_delete_table(self, table: str, **params: Any) -> PlannedOperation:
        planned = self._plan_delete_collection(table, **params)
        planned.name = "delete-table"
        return planned

    def _plan_query(self, statement: str, **params: Any) -> PlannedOperation:
        stripped = statement.strip()
        documents = parse_mongo_operations(stripped) if stripped.startswith("[") else [parse_command(stripped)]

        async def estimate(target: "MongoBackend") -> int | None:
            total = None
            for document in documents:
                command = next(iter(document))
                if command in ("delete", "update"):
                    key = "deletes" if command == "delete" else "updates"
                    for entry in document.get(key, []):
                        total = (total or 0) + await target.db[document[command]].count_documents(entry.get("q", {}))
                elif command == "drop":
                    total = (total or 0) + await target.db[document["drop"]].count_documents({})
            return total

        return self._commands("query", {"statement": statement, **params}, documents, estimate=estimate)

    def _plan_seed(self, rows: list[tuple[str, list[dict]]], **params: Any) -> PlannedOperation:
        documents = [{"insert": table, "documents": table_rows} for table, table_rows in rows if table_rows]
        total = sum(len(table_rows) for _, table_rows in rows)

        async def estimate(target: "MongoBackend") -> int:
            return total

        return self._commands(
            "seed",
            {"tables": [t for t, _ in rows], **params},
            documents,
            estimate=estimate,
            creates=[f"{len(table_rows)} documents in {table}" for table, table_rows in rows],
        )

    def _plan_init(self, schema: Any, **params: Any) -> PlannedOperation:
        documents: list[dict] = [{"create": spec.name} for spec in schema.tables]
        for spec in schema.tables:
            for index in spec.indexes:
                documents.append(
                    {
                        "createIndexes": spec.name,
                        "indexes": [
                            {
                                "key": {c: 1 for c in index.columns},
                                "name": index.name or f"idx_{spec.name}_{'_'.join(index.columns)}",
                                "unique": index.unique,
                            }
                        ],
                    }
                )
            if spec.seed_data:
                documents.append({"insert": spec.name, "documents": spec.seed_data})
        return self._commands(
            "init",
            {"schema": schema.name, **params},
            documents,
            creates=[f"collection {spec.name}" for spec in schema.tables],
        )

    def _plan_migrate(self, name: str, body: str, **params: Any) -> PlannedOperation:
        operations = parse_mongo_operations(body)

        async def apply(target: "MongoBackend") -> None:
            outcome = await MigrationLedger(target).apply(name, body)
            if outcome.status == "failed":
                raise DatabaseError(f"Migration {name} failed: {outcome.error}")

        return PlannedOperation(
            "migrate",
            {"name": name, **params},
            [json_util.dumps(op) for op in operations],
            apply,
            modifies=[f"migration {name}"],
        )

    def _plan_restore(
        self,
        input: Path,
        drop_first: bool = False,
        key: Path | None = None,
        **params: Any,
    ) -> PlannedOperation:
        async def apply(target: "MongoBackend") -> None:
            await target.restore(input, drop_first=drop_first, key_path=key)

        return PlannedOperation(
            "restore",
            {"input": str(input), "drop_first": drop_first, **params},
            [f"mongorestore {input}" + (" --drop" if drop_first else "")],
            apply,
            modifies=[f"database {self.database}"],
        )


def _search_type(data_type: str) -> str:
    """PostgreSQL-style type name for a sampled field, as read by ``value_matches``."""
    types = set(data_type.split("|")) - {"null"}
    if types <= {"int", "double", "long", "decimal"} and types:
        return "numeric"
    if types == {"bool"}:
        return "boolean"
    if types & {"object", "array"}:
        return "jsonb"
    return "text"
