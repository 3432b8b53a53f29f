"""
Pytest fixtures for test infrastructure.

This module is automatically loaded by pytest and provides shared fixtures.
For data builders and skip markers, see test_helpers.py.

The database is a throwaway SQLite file (aiosqlite). DATABASE_URL must be set
before anything under src is imported, because the engine is created at
import time from settings.
"""

import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="serp-sentinel-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["API_KEYS"] = "test-key"
os.environ["AI_CALL_DELAY_SECONDS"] = "0"
os.environ["ANTHROPIC_API_KEY"] = "test-anthropic-key"

import pytest


# =============================================================================
# Global fixtures (autouse)
# =============================================================================
@pytest.fixture(autouse=True)
def no_ai_delay(monkeypatch):
    """Drivers and agents must not sleep between steps in tests."""
    from src.config import settings
    monkeypatch.setattr(settings, "ai_call_delay_seconds", 0)


@pytest.fixture(autouse=True)
def no_llm(monkeypatch):
    """Unpatched AI calls fail fast instead of reaching the network.

    Services then return None, which is their documented failure value.
    """
    from unittest.mock import AsyncMock, MagicMock
    from src.analyst import analyzer

    blocked = MagicMock()
    blocked.messages.create_with_completion = AsyncMock(side_effect=RuntimeError("LLM disabled in tests"))
    monkeypatch.setattr(analyzer, "client", blocked)
    return blocked


# =============================================================================
# Shared fixtures
# =============================================================================
@pytest.fixture
async def db():
    """Fresh schema for every test that touches the database."""
    from src.archivist.database import drop_db, init_db

    await drop_db()
    await init_db()
    yield
    await drop_db()


@pytest.fixture
async def project(db):
    """An active project with two keywords and both sources."""
    from tests.test_helpers import create_project
    return await create_project()


@pytest.fixture
def sample_html():
    """A news article page with boilerplate around the main content."""
    return """
    <html>
      <head>
        <title>Acme lancia la nuova linea sostenibile</title>
        <meta name="description" content="Acme presenta una linea di prodotti a basso impatto.">
      </head>
      <body>
        <nav>Home | Notizie | Contatti</nav>
        <article>
          <h1>Acme lancia la nuova linea sostenibile</h1>
          <p>Acme ha presentato oggi a Milano la sua nuova linea di prodotti realizzati con materiali riciclati.</p>
          <p>Secondo l'amministratore delegato, la linea rappresenta il trenta per cento del fatturato previsto.</p>
          <p>Breve.</p>
          <p>I concorrenti principali stanno preparando iniziative simili per il prossimo anno fiscale.</p>
        </article>
        <footer>Copyright 2026 Notizie Srl - tutti i diritti riservati e condizioni d'uso</footer>
        <script>var tracking = "should never appear in the excerpt";</script>
      </body>
    </html>
    """
