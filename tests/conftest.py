"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import math

import pytest

from concierge.config import ConciergeConfig
from concierge.db.connection import Database
from concierge.db.models import Tenant
from concierge.db.repository import KnowledgeRepository
from concierge.db.schema import initialize
from concierge.db.vectors import ensure_vec_table
from concierge.errors import ProviderError
from concierge.messaging.gateway import MessageGateway
from concierge.providers import EmbeddingProvider, GenerationProvider

DIMS = 4


class FakeEmbedder(EmbeddingProvider):
    """Deterministic unit vectors derived from the text hash.

    ``vectors`` pins the embedding of specific texts; ``fail_on`` makes any
    text containing that substring raise ``ProviderError``.
    """

    def __init__(self, dimensions: int = DIMS) -> None:
        self.dimensions = dimensions
        self.vectors: dict[str, list[float]] = {}
        self.calls: list[str] = []
        self.fail_on: str | None = None

    def embed(self, text: str, timeout: float | None = None) -> list[float]:
        self.calls.append(text)
        if self.fail_on is not None and self.fail_on in text:
            raise ProviderError("embedding backend unavailable")
        if text in self.vectors:
            return self.vectors[text]
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        raw = [b + 1.0 for b in digest[: self.dimensions]]
        norm = math.sqrt(sum(v * v for v in raw))
        return [v / norm for v in raw]


class FakeGenerator(GenerationProvider):
    model = "fake/generator"

    def __init__(self, reply: str = "Sure, happy to help.") -> None:
        self.reply = reply
        self.prompts: list[str] = []
        self.fail = False

    def generate(self, prompt: str, timeout: float | None = None) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise ProviderError("generation backend unavailable")
        return self.reply

    def extract_image_text(self, data: bytes, mime_type: str) -> str:
        return "Menu: espresso 2 EUR, cappuccino 3 EUR. " * 3


class FakeGateway(MessageGateway):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def send(self, from_e164: str, to_e164: str, body: str) -> str:
        if self.fail:
            raise ProviderError("gateway unavailable")
        self.sent.append((from_e164, to_e164, body))
        return f"SM{len(self.sent):04d}"


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "concierge.db"


@pytest.fixture
def tmp_db(db_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    conn = Database(db_path).connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def vec_table(tmp_db):
    return ensure_vec_table(tmp_db, "fake_embed", DIMS)


@pytest.fixture
def repo(tmp_db, vec_table):
    return KnowledgeRepository(tmp_db, vec_table)


@pytest.fixture
def tenant(repo):
    return repo.add_tenant(
        Tenant(id="t1", name="Harbour Cafe", category="cafes", channel_number="+35790000001")
    )


@pytest.fixture
def config():
    cfg = ConciergeConfig()
    cfg.embedding.model = "fake/embed"
    cfg.embedding.dimensions = DIMS
    cfg.ingestion.chunk_size = 200
    cfg.ingestion.boundary_slack = 40
    cfg.ingestion.min_chunk_chars = 20
    cfg.ingestion.write_batch_size = 3
    cfg.ingestion.max_ops_per_commit = 4
    cfg.limits.max_messages_per_session = 5
    cfg.messaging.from_number = "+35790000001"
    return cfg


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def gateway():
    return FakeGateway()


_PROJECT_YAML = """\
embedding:
  model: fake/embed
  dimensions: 4
ingestion:
  chunk_size: 200
  boundary_slack: 40
  min_chunk_chars: 20
limits:
  max_messages_per_session: 5
messaging:
  from_number: "+35790000001"
"""


@pytest.fixture
def deployment(tmp_path, monkeypatch, embedder, generator, gateway):
    """Project directory for CLI tests, wired to the fake providers and gateway.

    The global config lives under tmp_path; ``concierge init`` has not run yet.
    """
    monkeypatch.delenv("CONCIERGE_GENERATION_MODEL", raising=False)
    monkeypatch.delenv("CONCIERGE_EMBEDDING_MODEL", raising=False)
    monkeypatch.setattr(
        "concierge.config._GLOBAL_CONFIG_PATH", tmp_path / "home" / ".concierge" / "config.yaml"
    )
    monkeypatch.setattr(
        "concierge.cli.runtime.make_providers", lambda config, llm: (embedder, generator)
    )
    monkeypatch.setattr(
        "concierge.cli.runtime.make_gateway", lambda config, sends, dry_run: gateway
    )
    project = tmp_path / "project"
    project.mkdir()
    (project / "concierge.yaml").write_text(_PROJECT_YAML, encoding="utf-8")
    return project
