"""Tests for DDL string building."""

import hashlib
import os
import subprocess
import sys
from pathlib import Path

import pytest
from django.db import models

from django_pgparty.sql import (
    PartitionSQL,
    TableDefinition,
    hashed_table_name,
    partition_index_name,
    short_hash,
    template_table_name,
)
from django_pgparty.types import HashBounds, ListValues, PartitionType, RangeBounds
from tests.fixtures.fakes import FakeConnection

ROOT = Path(__file__).absolute().parent.parent


@pytest.fixture
def sql():
    connection = FakeConnection()
    return PartitionSQL(connection.quote_name, connection.quote)


class TestNaming:
    def test_short_hash_is_md5_prefix(self):
        assert short_hash("orders") == hashlib.md5(b"orders").hexdigest()[:7]

    def test_template_name(self):
        assert template_table_name("orders") == "orders_template"

    def test_hashed_name_is_stable(self):
        clause = "FROM ('2024-01-01') TO ('2024-02-01')"
        assert hashed_table_name("orders", clause) == hashed_table_name("orders", clause)
        assert hashed_table_name("orders", clause) == f"orders_{short_hash(clause)}"

    def test_hashed_name_differs_per_clause(self):
        first = hashed_table_name("orders", "FROM ('2024-01-01') TO ('2024-02-01')")
        second = hashed_table_name("orders", "FROM ('2024-02-01') TO ('2024-03-01')")
        assert first != second

    def test_set_values_name_is_stable_across_hash_seeds(self):
        script = (
            "from django_pgparty.sql import PartitionSQL, hashed_table_name\n"
            "from django_pgparty.types import ListValues\n"
            "sql = PartitionSQL(lambda name: name, lambda value: repr(str(value)))\n"
            "print(hashed_table_name('regions', sql.constraint_clause(ListValues({'eu', 'us', 'apac', 'latam'}))))\n"
        )
        names = set()
        for seed in ("1", "2", "3", "4"):
            result = subprocess.run(
                [sys.executable, "-c", script],
                cwd=ROOT,
                env={**os.environ, "PYTHONHASHSEED": seed},
                capture_output=True,
                text=True,
                check=True,
            )
            names.add(result.stdout.strip())
        assert names == {"regions_" + short_hash("IN ('apac','eu','latam','us')")}

    def test_default_partition_name(self):
        assert hashed_table_name("orders", None) == "orders_default"

    def test_partition_index_name(self):
        assert partition_index_name("orders_idx", "orders_2024") == f"orders_idx_{short_hash('orders_2024')}"


class TestQuoting:
    def test_booleans_use_catalog_literals(self, sql):
        assert sql.quote(True) == "'t'"
        assert sql.quote(False) == "'f'"

    def test_other_values_use_connection_quoting(self, sql):
        assert sql.quote("O'Brien") == "'O''Brien'"
        assert sql.quote(7) == "7"

    def test_scalar_and_collection(self, sql):
        assert sql.quote_collection("eu") == "'eu'"
        assert sql.quote_collection(["eu", "us"]) == "'eu','us'"
        assert sql.quote_collection(range(1, 3)) == "1,2"


class TestClauses:
    def test_partition_by_column(self, sql):
        assert sql.partition_by_clause(PartitionType.RANGE, "created_at") == 'PARTITION BY RANGE ("created_at")'

    def test_partition_by_columns(self, sql):
        assert sql.partition_by_clause("list", ["region", "kind"]) == 'PARTITION BY LIST ("region","kind")'

    def test_partition_by_expression_is_verbatim(self, sql):
        clause = sql.partition_by_clause(PartitionType.HASH, lambda: "(lower(email))")
        assert clause == "PARTITION BY HASH ((lower(email)))"

    def test_range_clause(self, sql):
        assert sql.range_constraint_clause("2024-01-01", "2024-02-01") == "FROM ('2024-01-01') TO ('2024-02-01')"

    def test_multi_column_range_clause(self, sql):
        assert sql.range_constraint_clause((1, "a"), (2, "b")) == "FROM (1,'a') TO (2,'b')"

    def test_boolean_list_clause(self, sql):
        assert sql.list_constraint_clause([True]) == "IN ('t')"
        assert sql.list_constraint_clause([True, False]) == "IN ('t','f')"

    def test_set_values_are_sorted(self, sql):
        assert sql.list_constraint_clause({"us", "eu", "apac"}) == "IN ('apac','eu','us')"
        assert sql.list_constraint_clause(frozenset({3, 1, 2})) == "IN (1,2,3)"

    def test_any_iterable_of_values(self, sql):
        assert sql.list_constraint_clause(value for value in ("eu", "us")) == "IN ('eu','us')"
        assert sql.list_constraint_clause({"eu": 1, "us": 2}.keys()) == "IN ('eu','us')"

    def test_string_is_a_single_value(self, sql):
        assert sql.list_constraint_clause("eu") == "IN ('eu')"

    def test_hash_clause_coerces_integers(self, sql):
        assert sql.hash_constraint_clause("4", 1) == "WITH (MODULUS 4, REMAINDER 1)"

    def test_constraint_dispatch(self, sql):
        assert sql.constraint_clause(RangeBounds(1, 10)) == "FROM (1) TO (10)"
        assert sql.constraint_clause(ListValues(["a"])) == "IN ('a')"
        assert sql.constraint_clause(HashBounds(2, 0)) == "WITH (MODULUS 2, REMAINDER 0)"
        assert sql.constraint_clause(None) is None

    def test_unknown_constraint(self, sql):
        with pytest.raises(TypeError):
            sql.constraint_clause(("2024-01-01", "2024-02-01"))


class TestStatements:
    def test_create_table(self, sql):
        definition = TableDefinition("events", lambda field: "timestamp")
        definition.column("id", "bigserial", null=False)
        definition.column("created_at", models.DateTimeField())
        definition.column("note", "text")

        statement = sql.create_table(definition, 'PARTITION BY RANGE ("created_at")')

        assert statement == (
            'CREATE TABLE "events" ("id" bigserial NOT NULL, "created_at" timestamp NOT NULL, "note" text) '
            'PARTITION BY RANGE ("created_at")'
        )

    def test_create_table_with_primary_key_and_default(self, sql):
        definition = TableDefinition("events", lambda field: "uuid")
        definition.column("id", "uuid", null=False, default="gen_random_uuid()")
        definition.primary_key("id", "created_at")

        assert sql.create_table(definition) == (
            'CREATE TABLE "events" ("id" uuid NOT NULL DEFAULT gen_random_uuid(), PRIMARY KEY ("id", "created_at"))'
        )

    def test_nullable_field(self):
        definition = TableDefinition("events", lambda field: "text")
        definition.column("note", models.TextField(null=True))
        assert definition.columns[0].null is True
        assert definition.has_column("note")
        assert not definition.has_column("id")

    def test_create_table_like(self, sql):
        assert sql.create_table_like("orders", "orders_template") == (
            'CREATE TABLE "orders_template" (LIKE "orders" INCLUDING ALL)'
        )

    def test_create_table_like_sub_partitioned(self, sql):
        statement = sql.create_table_like(
            "orders",
            "orders_2024",
            excluding_indexes=True,
            partition_clause='PARTITION BY LIST ("region")',
        )
        assert statement == (
            'CREATE TABLE "orders_2024" (LIKE "orders" INCLUDING ALL EXCLUDING INDEXES) PARTITION BY LIST ("region")'
        )

    def test_add_primary_key(self, sql):
        assert sql.add_primary_key("t", "id") == 'ALTER TABLE "t" ADD PRIMARY KEY ("id")'
        assert sql.add_primary_key("t", ["id", "day"]) == 'ALTER TABLE "t" ADD PRIMARY KEY ("id", "day")'

    def test_attach_and_detach(self, sql):
        assert sql.attach_partition("p", "c", "IN ('a')") == 'ALTER TABLE "p" ATTACH PARTITION "c" FOR VALUES IN (\'a\')'
        assert sql.attach_default_partition("p", "c") == 'ALTER TABLE "p" ATTACH PARTITION "c" DEFAULT'
        assert sql.detach_partition("p", "c") == 'ALTER TABLE "p" DETACH PARTITION "c"'

    def test_create_index_on_only(self, sql):
        assert sql.create_index("i", "t", "a", only=True) == 'CREATE INDEX "i" ON ONLY "t" ("a")'

    def test_create_index_all_options(self, sql):
        statement = sql.create_index(
            "i",
            "t",
            ["a", "b"],
            unique=True,
            using="btree",
            where="a IS NOT NULL",
            concurrently=True,
        )
        assert statement == 'CREATE UNIQUE INDEX CONCURRENTLY "i" ON "t" USING btree ("a", "b") WHERE a IS NOT NULL'

    def test_index_attach_and_drop(self, sql):
        assert sql.attach_index("parent_idx", "child_idx") == 'ALTER INDEX "parent_idx" ATTACH PARTITION "child_idx"'
        assert sql.drop_index("i") == 'DROP INDEX IF EXISTS "i"'
