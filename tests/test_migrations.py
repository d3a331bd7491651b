"""Tests for SQL statement splitting and the migration ledger."""

import pytest

from db_tools.config.models import BackendKind
from db_tools.errors import ValidationError
from db_tools.schema.migrations import MigrationLedger, parse_mongo_operations, split_sql_statements

from fakes import FakeBackend


class TestSplitSqlStatements:
    def test_simple(self) -> None:
        assert split_sql_statements("SELECT 1; SELECT 2;") == ["SELECT 1", "SELECT 2"]

    def test_semicolon_in_string(self) -> None:
        assert split_sql_statements("INSERT INTO t VALUES ('a;b'); SELECT 1") == [
            "INSERT INTO t VALUES ('a;b')",
            "SELECT 1",
        ]

    def test_doubled_quote_escape(self) -> None:
        assert split_sql_statements("SELECT 'it''s; fine'; SELECT 2") == ["SELECT 'it''s; fine'", "SELECT 2"]

    def test_quoted_identifier(self) -> None:
        assert split_sql_statements('SELECT "a;b" FROM t; SELECT 2') == ['SELECT "a;b" FROM t', "SELECT 2"]

    def test_dollar_quoted_function_body(self) -> None:
        sql = (
            "CREATE FUNCTION touch() RETURNS trigger AS $$\n"
            "BEGIN NEW.updated_at = NOW(); RETURN NEW; END;\n"
            "$$ LANGUAGE plpgsql;\n"
            "SELECT 1;"
        )
        statements = split_sql_statements(sql)
        assert len(statements) == 2
        assert statements[0].endswith("LANGUAGE plpgsql")

    def test_tagged_dollar_quote(self) -> None:
        sql = "DO $body$ BEGIN PERFORM 1; END $body$; SELECT 2"
        assert split_sql_statements(sql) == ["DO $body$ BEGIN PERFORM 1; END $body$", "SELECT 2"]

    def test_positional_parameter_is_not_a_dollar_quote(self) -> None:
        assert split_sql_statements("SELECT $1; SELECT $2") == ["SELECT $1", "SELECT $2"]

    def test_comments_do_not_split(self) -> None:
        sql = "-- drop; this\nSELECT 1 /* a; /* nested; */ b */; SELECT 2"
        statements = split_sql_statements(sql)
        assert len(statements) == 2
        assert statements[1] == "SELECT 2"

    def test_comment_only_statements_dropped(self) -> None:
        assert split_sql_statements("-- nothing here\n;  ;\n/* still nothing */;") == []

    def test_empty(self) -> None:
        assert split_sql_statements("") == []


class TestParseMongoOperations:
    def test_array(self) -> None:
        ops = parse_mongo_operations('[{"create": "users"}, {"drop": "legacy"}]')
        assert ops == [{"create": "users"}, {"drop": "legacy"}]

    def test_single_document_is_wrapped(self) -> None:
        assert parse_mongo_operations('{"create": "users"}') == [{"create": "users"}]

    def test_invalid_json(self) -> None:
        with pytest.raises(ValidationError, match="JSON array"):
            parse_mongo_operations("db.users.drop()")

    def test_non_documents(self) -> None:
        with pytest.raises(ValidationError):
            parse_mongo_operations("[1, 2]")


class TestMigrationLedger:
    async def test_applies_and_records_once(self) -> None:
        backend = FakeBackend()
        ledger = MigrationLedger(backend)
        body = "CREATE TABLE a (x int); INSERT INTO a VALUES (1);"

        outcome = await ledger.apply("001_init", body)
        assert outcome.status == "applied"
        assert outcome.statements == 2
        assert backend.executed == ["CREATE TABLE a (x int)", "INSERT INTO a VALUES (1)"]
        assert backend.migrations == ["001_init"]

        again = await ledger.apply("001_init", body)
        assert again.status == "skipped"
        assert len(backend.executed) == 2

    async def test_failure_rolls_back_statements_and_ledger(self) -> None:
        backend = FakeBackend()
        backend.fail_on = "INSERT"
        outcome = await MigrationLedger(backend).apply("002_bad", "CREATE TABLE b (x int); INSERT INTO b VALUES (1);")

        assert outcome.status == "failed"
        assert "statement failed" in outcome.error
        assert backend.executed == []
        assert backend.migrations == []
        assert not await MigrationLedger(backend).is_applied("002_bad")

    async def test_empty_body_fails(self) -> None:
        outcome = await MigrationLedger(FakeBackend()).apply("003_empty", "-- nothing\n")
        assert outcome.status == "failed"
        assert outcome.error == "Migration contains no statements"

    async def test_mongo_body_is_command_documents(self) -> None:
        backend = FakeBackend(BackendKind.MONGODB)
        outcome = await MigrationLedger(backend).apply("001_users", '[{"create": "users"}]')
        assert outcome.status == "applied"
        assert backend.executed == [{"create": "users"}]
        assert backend.migrations == ["001_users"]

    async def test_mongo_ledger_write_failure_is_a_warning(self) -> None:
        backend = FakeBackend(BackendKind.MONGODB)
        backend.fail_record = True
        outcome = await MigrationLedger(backend).apply("001_users", '[{"create": "users"}]')
        assert outcome.status == "applied"
        assert backend.executed == [{"create": "users"}]
        assert "could not be recorded" in outcome.warnings[0]

    async def test_postgres_ledger_write_failure_fails_migration(self) -> None:
        backend = FakeBackend()
        backend.fail_record = True
        outcome = await MigrationLedger(backend).apply("004", "CREATE TABLE c (x int)")
        assert outcome.status == "failed"
        assert backend.executed == []
