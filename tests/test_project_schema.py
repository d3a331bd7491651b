"""Tests for project schema loading, table ordering and init DDL."""

import json
from pathlib import Path

import pytest

from db_tools.errors import ValidationError
from db_tools.schema.models import IndexSpec, ProjectSchema, TableSpec
from db_tools.schema.project import (
    DEFAULT_SCHEMA,
    create_index_sql,
    create_table_sql,
    generate_init_statements,
    load_project_schema,
    order_tables,
    project_slug,
    seed_rows,
    table_dependencies,
)


def _shop() -> ProjectSchema:
    return ProjectSchema(
        name="Shop",
        extensions=["pgcrypto"],
        tables=[
            TableSpec(
                name="order_items",
                columns={
                    "id": "SERIAL PRIMARY KEY",
                    "order_id": "INTEGER REFERENCES orders(id) ON DELETE CASCADE",
                },
            ),
            TableSpec(
                name="orders",
                columns={"id": "SERIAL PRIMARY KEY", "user_id": "INTEGER NOT NULL REFERENCES users(id)"},
                indexes=[IndexSpec(columns=["user_id"])],
                seed_data=[{"user_id": 1}],
            ),
            TableSpec(
                name="users",
                columns={"id": "SERIAL PRIMARY KEY", "email": "TEXT"},
                seed_data=[{"email": "a@example.com"}],
            ),
        ],
        functions=["CREATE FUNCTION noop() RETURNS void AS $$ BEGIN END; $$ LANGUAGE plpgsql;"],
    )


class TestProjectSlug:
    @pytest.mark.parametrize(
        "name, slug",
        [("My Shop", "my_shop"), ("acme-api v2", "acme_api_v2"), ("  ", "project"), ("Ünïcode!", "n_code")],
    )
    def test_slug(self, name: str, slug: str) -> None:
        assert project_slug(name) == slug


class TestLoadProjectSchema:
    def test_default_when_no_file(self, tmp_path: Path) -> None:
        assert load_project_schema("Shop", schemas_dir=tmp_path) is DEFAULT_SCHEMA

    def test_file_found_by_slug(self, tmp_path: Path) -> None:
        (tmp_path / "my_shop.json").write_text(json.dumps({"tables": [{"name": "items", "columns": {"id": "INT"}}]}))
        schema = load_project_schema("My Shop", schemas_dir=tmp_path)
        assert [t.name for t in schema.tables] == ["items"]

    def test_explicit_path_wins(self, tmp_path: Path) -> None:
        path = tmp_path / "custom.json"
        path.write_text(json.dumps({"name": "Custom", "tables": []}))
        assert load_project_schema("Shop", schema_path=path, schemas_dir=tmp_path / "none").name == "Custom"

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ValidationError, match="Invalid JSON"):
            load_project_schema("Shop", schema_path=path)

    def test_wrong_structure(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"tables": [{"name": "items"}]}))
        with pytest.raises(ValidationError, match="does not match") as exc_info:
            load_project_schema("Shop", schema_path=path)
        assert exc_info.value.suggestions


class TestOrdering:
    def test_dependencies(self) -> None:
        deps = table_dependencies(_shop())
        assert deps == {"order_items": {"orders"}, "orders": {"users"}, "users": set()}

    def test_parents_first(self) -> None:
        order, acyclic = order_tables(_shop())
        assert acyclic
        assert order == ["users", "orders", "order_items"]

    def test_self_reference_is_not_a_cycle(self) -> None:
        schema = ProjectSchema(
            tables=[TableSpec(name="nodes", columns={"id": "SERIAL PRIMARY KEY", "parent": "INTEGER REFERENCES nodes(id)"})]
        )
        assert order_tables(schema) == (["nodes"], True)

    def test_cycle_keeps_declared_order(self) -> None:
        schema = ProjectSchema(
            tables=[
                TableSpec(name="a", columns={"b_id": "INTEGER REFERENCES b(id)"}),
                TableSpec(name="b", columns={"a_id": "INTEGER REFERENCES a(id)"}),
            ]
        )
        assert order_tables(schema) == (["a", "b"], False)


class TestInitStatements:
    def test_create_table_sql(self) -> None:
        sql = create_table_sql(TableSpec(name="users", columns={"id": "SERIAL PRIMARY KEY", "email": "TEXT"}))
        assert sql == 'CREATE TABLE IF NOT EXISTS "users" (\n  "id" SERIAL PRIMARY KEY,\n  "email" TEXT\n)'

    def test_create_table_without_foreign_keys(self) -> None:
        spec = _shop().table("order_items")
        sql = create_table_sql(spec, with_foreign_keys=False)
        assert "REFERENCES" not in sql
        assert "ON DELETE" not in sql
        assert '"order_id" INTEGER' in sql

    def test_create_index_sql(self) -> None:
        assert create_index_sql("users", IndexSpec(columns=["email"], unique=True)) == (
            'CREATE UNIQUE INDEX IF NOT EXISTS "idx_users_email" ON "users" ("email")'
        )
        assert create_index_sql("t", IndexSpec(columns=["a", "b"], name="ab")) == (
            'CREATE INDEX IF NOT EXISTS "ab" ON "t" ("a", "b")'
        )

    def test_generate_init_statements_order(self) -> None:
        statements = generate_init_statements(_shop())
        assert statements[0] == 'CREATE EXTENSION IF NOT EXISTS "pgcrypto"'
        creates = [s.split('"')[1] for s in statements if s.startswith("CREATE TABLE")]
        assert creates == ["users", "orders", "order_items"]
        assert statements[4] == 'CREATE INDEX IF NOT EXISTS "idx_orders_user_id" ON "orders" ("user_id")'
        assert statements[-1].endswith("LANGUAGE plpgsql")

    def test_default_schema_statements(self) -> None:
        statements = generate_init_statements(DEFAULT_SCHEMA)
        assert statements[0].startswith('CREATE TABLE IF NOT EXISTS "users"')
        assert len(statements) == 2

    def test_seed_rows_parents_first(self) -> None:
        assert seed_rows(_shop()) == [("users", [{"email": "a@example.com"}]), ("orders", [{"user_id": 1}])]
