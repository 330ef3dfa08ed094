"""Tests for the command line entry point."""

import json
import logging
import sys
from argparse import Namespace

import pytest

from chunkvault.__main__ import JSONFormatter, cmd_collections, cmd_status, main
from chunkvault.store import ChunkStore, parse_timestamp


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    """Config file pointing at a seeded database."""
    for name in ("API_KEY", "DB_PATH"):
        monkeypatch.delenv(f"CHUNKVAULT_{name}", raising=False)

    db_path = tmp_path / "chunks.db"
    store = ChunkStore(db_path)
    store.connect()
    for chunk_id in ("n1", "n2"):
        store.upsert("alice", "notes", chunk_id, b"x", b"iv")
    store.upsert("alice", "tags", "t1", b"x", b"iv")
    store.close()

    path = tmp_path / "config.yaml"
    path.write_text(f"auth:\n  api_key: secret\nstorage:\n  db_path: {db_path}\n")
    return path


class TestJSONFormatter:
    """Tests for JSON log lines."""

    def test_format(self):
        record = logging.LogRecord(
            "chunkvault.store", logging.INFO, __file__, 1, "wrote %s", ("n1",), None
        )

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["component"] == "chunkvault.store"
        assert entry["message"] == "wrote n1"
        assert entry["timestamp"].endswith("Z")
        parse_timestamp(entry["timestamp"])

    def test_format_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()
        record = logging.LogRecord(
            "chunkvault.api", logging.ERROR, __file__, 1, "failed", (), exc_info
        )

        entry = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in entry["exception"]


class TestCommands:
    """Tests for CLI subcommands."""

    def test_collections_json(self, config_path, capsys):
        code = cmd_collections(Namespace(config=config_path, user="alice", json=True))
        data = json.loads(capsys.readouterr().out)

        counts = {c["name"]: c["chunk_count"] for c in data["collections"]}
        assert code == 0
        assert counts == {"notes": 2, "tags": 1}

    def test_collections_empty_user(self, config_path, capsys):
        code = cmd_collections(Namespace(config=config_path, user="nobody", json=False))

        assert code == 0
        assert "No collections" in capsys.readouterr().out

    def test_status_json(self, config_path, capsys):
        code = cmd_status(Namespace(config=config_path, json=True))
        data = json.loads(capsys.readouterr().out)

        assert code == 0
        assert data["auth"]["api_key_configured"] is True
        assert data["storage"]["reachable"] is True
        assert data["storage"]["chunk_count"] == 3
        assert data["storage"]["collection_count"] == 2

    def test_main_without_command_prints_help(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["chunkvault"])

        assert main() == 1
        assert "serve" in capsys.readouterr().out
