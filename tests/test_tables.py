from dataclasses import astuple

from boostrelay.tables import table_names


def test_explicit_prefix():
    names = table_names("test")
    assert names.delivered_payload == "test_payload_delivered"
    assert names.migrations == "test_migrations"
    assert all(name.startswith("test_") for name in astuple(names))


def test_names_are_unique():
    names = astuple(table_names("x"))
    assert len(set(names)) == len(names)


def test_prefix_from_environment(monkeypatch):
    monkeypatch.setenv("DB_TABLE_PREFIX", "abc")
    assert table_names().block_builder == "abc_blockbuilder"


def test_default_prefix(monkeypatch):
    monkeypatch.delenv("DB_TABLE_PREFIX", raising=False)
    assert all(name.startswith("dev_") for name in astuple(table_names()))