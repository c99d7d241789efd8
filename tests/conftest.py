import io

import pytest
from PIL import Image
from langchain_core.messages import AIMessage
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from scene_import.config import Settings
from scene_import.database import Base
from scene_import.models import import_job, scene  # noqa: F401 (registers tables)
from scene_import.agents.import_agent import PipelineDeps
from scene_import.dao.job_store import JobStore
from scene_import.errors import DownloadError
from scene_import.services.file_store import FileStore
from scene_import.states.state import StoredFile

OWNER = "user-1"

SCRIPT_TEXT = """LE MISANTHROPE
par Molière

ALCESTE: Laissez-moi, je vous prie.
PHILINTE: Mais encore, dites-moi quelle bizarrerie...

ALCESTE
Je veux qu'on soit sincère,
et qu'en homme d'honneur.
"""

SCENE_JSON = (
    '{"title": "Le Misanthrope", "author": "Molière", "characters": ["Alceste"], '
    '"lines": [{"characterName": "Alceste", "text": "Laissez-moi.", "order": 7}, '
    '{"characterName": "Philinte", "text": "Mais encore ?", "order": 3}]}'
)


def png_bytes(color: str = "white", size=(24, 24)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_settings(**overrides) -> Settings:
    defaults = {
        "database_url": "sqlite://",
        "openai_api_key": None,
        "google_api_key": None,
        "require_ai_consent": False,
        "allow_local_ocr_fallback": True,
        "allow_heuristic_structuring": True,
        "soft_timeout_ms": 0,
        "cron_secret": "cron-secret",
    }
    defaults.update(overrides)
    return Settings(**defaults)


# ── Fakes ─────────────────────────────────────────────────────────────────────

class FakeFileStore(FileStore):
    def __init__(self, files: dict | None = None):
        # path -> (bytes, content_type)
        self.files = dict(files or {})
        self.downloads: list[str] = []

    def download(self, path: str) -> StoredFile:
        self.downloads.append(path)
        if path not in self.files:
            raise DownloadError(f"Download failed for {path}: not found")
        data, content_type = self.files[path]
        return StoredFile(path=path, name=path.rsplit("/", 1)[-1], content_type=content_type, data=data)

    def upload(self, path: str, data: bytes, content_type: str | None = None) -> str:
        self.files[path] = (data, content_type or "application/octet-stream")
        return path


class FakeOcrEngine:
    """Returns the queued texts page after page; an Exception in the queue is raised."""

    def __init__(self, outputs=None, default: str = ""):
        self.outputs = list(outputs or [])
        self.default = default
        self.calls = 0

    def recognize(self, image) -> str:
        self.calls += 1
        value = self.outputs.pop(0) if self.outputs else self.default
        if isinstance(value, Exception):
            raise value
        return value


class FakeChatModel:
    """Duck-typed chat model recording every invoke() call."""

    def __init__(self, responses=None, error: Exception | None = None):
        self.responses = list(responses or [])
        self.error = error
        self.calls: list = []

    def invoke(self, messages):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return AIMessage(content=self.responses.pop(0) if self.responses else "")


class FakePage:
    def __init__(self, text: str):
        self.text = text

    def extract_text(self):
        return self.text

    def to_image(self, resolution: int = 72):
        return type("PageImage", (), {"original": Image.new("RGB", (16, 16), "white")})()


class FakePdf:
    def __init__(self, page_texts: list[str]):
        self.pages = [FakePage(t) for t in page_texts]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def fake_pdf(monkeypatch):
    """Patch pdfplumber.open; `register(page_texts)` returns the bytes of a fake PDF."""
    registry: dict[bytes, list[str]] = {}

    def fake_open(stream):
        data = stream.read()
        if data not in registry:
            raise ValueError("not a PDF")
        return FakePdf(registry[data])

    monkeypatch.setattr("scene_import.tools.pdf_tools.pdfplumber.open", fake_open)

    def register(page_texts: list[str]) -> bytes:
        key = f"%PDF-fake-{len(registry)}".encode()
        registry[key] = page_texts
        return key

    return register


# ── Database ──────────────────────────────────────────────────────────────────

@pytest.fixture
def engine(tmp_path):
    # File-backed so the stream worker thread gets its own connection
    engine = create_engine(f"sqlite:///{tmp_path / 'imports.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(db):
    return JobStore(db)


@pytest.fixture
def file_store():
    return FakeFileStore()


@pytest.fixture
def make_deps(file_store):
    def _make(settings: Settings | None = None, vision=None, text=None, ocr=None) -> PipelineDeps:
        return PipelineDeps(
            settings=settings or make_settings(),
            file_store=file_store,
            vision_model=vision,
            text_model=text,
            ocr_engine=ocr,
        )
    return _make
