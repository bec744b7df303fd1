from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest
from loguru import logger

from mirrorseed import db
from mirrorseed.logging_config import configure_logger


def test_main_dsn_prefers_explicit_then_env(monkeypatch: Any) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://env:pw@envhost:5432/main")

    assert db.resolve_main_dsn("postgres://cli:pw@clihost/main") == (
        "postgresql+psycopg://cli:pw@clihost/main"
    )
    assert db.resolve_main_dsn() == "postgresql+psycopg://env:pw@envhost:5432/main"


def test_main_dsn_falls_back_to_local_default(monkeypatch: Any) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert db.resolve_main_dsn() == db.DEFAULT_MAIN_DSN


def test_mirror_dsn_per_source(monkeypatch: Any) -> None:
    monkeypatch.setenv("PARARIUS_MIRROR_URL", "postgresql://scraper:x@mirror:5442/pararius_mirror")
    monkeypatch.delenv("FUNDA_MIRROR_URL", raising=False)

    assert db.resolve_mirror_dsn("funda") == db.DEFAULT_FUNDA_DSN
    assert db.resolve_mirror_dsn("pararius") == (
        "postgresql+psycopg://scraper:x@mirror:5442/pararius_mirror"
    )
    with pytest.raises(ValueError):
        db.resolve_mirror_dsn("jaap")


def test_dsn_tag_hides_credentials() -> None:
    assert db.dsn_tag("postgresql+psycopg://user:secret@db:5432/main") == "db:5432/main"
    assert db.dsn_tag("postgresql+psycopg:///main") == "<configured>"


def test_configure_logger_adds_file_sink(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "seed.log"
    try:
        configure_logger("DEBUG", log_file)
        logger.debug("index page loaded")
    finally:
        logger.remove()
        logger.add(sys.stderr)

    assert "index page loaded" in log_file.read_text()
