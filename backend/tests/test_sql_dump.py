from __future__ import annotations

import pytest

from app.services.backup.sql_dump import SqlDumpError, parse_inserts


def test_parse_inserts_reads_multi_row_values() -> None:
    sql = """
    INSERT INTO teams (id, name, logo_url) VALUES
        (1, 'India', '/uploads/teams/t1.png'),
        (2, 'Australia', NULL);
    """
    tables = parse_inserts(sql)
    assert tables == {
        "teams": [
            {"id": 1, "name": "India", "logo_url": "/uploads/teams/t1.png"},
            {"id": 2, "name": "Australia", "logo_url": None},
        ]
    }


def test_parse_inserts_handles_escapes_casts_and_literals() -> None:
    sql = (
        "INSERT INTO public.\"users\" (\"id\", \"username\", \"is_verified\", \"points\", \"created_at\") "
        "VALUES (7, 'o''brien', TRUE, -12.5, '2024-03-01 10:00:00+00'::timestamp with time zone);"
    )
    rows = parse_inserts(sql)["users"]
    assert rows == [{
        "id": 7,
        "username": "o'brien",
        "is_verified": True,
        "points": -12.5,
        "created_at": "2024-03-01 10:00:00+00",
    }]


def test_parse_inserts_skips_comments_and_other_statements() -> None:
    sql = """
    -- PostgreSQL database dump
    SET statement_timeout = 0;
    /* schema */
    CREATE TABLE site_settings (id serial, key text, value text DEFAULT ';');
    SELECT pg_catalog.setval('site_settings_id_seq', 3, true);
    INSERT INTO site_settings (id, key, value) VALUES (1, 'site_name', 'Cric; Pro');
    INSERT INTO site_settings (id, key, value) VALUES (2, 'logo', '/uploads/site/logo.png');
    """
    rows = parse_inserts(sql)["site_settings"]
    assert [r["value"] for r in rows] == ["Cric; Pro", "/uploads/site/logo.png"]


def test_parse_inserts_rejects_column_count_mismatch() -> None:
    with pytest.raises(SqlDumpError):
        parse_inserts("INSERT INTO teams (id, name) VALUES (1);")


def test_parse_inserts_rejects_unterminated_tuple() -> None:
    with pytest.raises(SqlDumpError):
        parse_inserts("INSERT INTO teams (id, name) VALUES (1, 'India'")


def test_parse_inserts_empty_dump() -> None:
    assert parse_inserts("-- nothing here\n") == {}


def test_parse_inserts_reports_inserts_without_column_list() -> None:
    sql = """
    INSERT INTO public.users VALUES (1, 'alice', 'x');
    INSERT INTO public.users VALUES (2, 'bob', 'y');
    INSERT INTO teams (id, name) VALUES (1, 'India');
    """
    warnings: list[str] = []
    tables = parse_inserts(sql, warnings)
    assert tables == {"teams": [{"id": 1, "name": "India"}]}
    assert warnings == ["Table users: 2 INSERT statement(s) without a column list skipped"]
