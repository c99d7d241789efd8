import pytest

from scene_import.errors import DownloadError, ValidationError
from scene_import.services.file_store import LocalFileStore, build_file_store, guess_content_type
from conftest import make_settings


def test_local_store_round_trip(tmp_path):
    store = LocalFileStore(str(tmp_path))
    store.upload("user-1/scan.png", b"png-bytes", "image/png")

    file = store.download("user-1/scan.png")

    assert file.name == "scan.png"
    assert file.content_type == "image/png"
    assert file.data == b"png-bytes"
    assert file.size == 9


def test_local_store_refuses_paths_outside_its_root(tmp_path):
    store = LocalFileStore(str(tmp_path / "uploads"))
    with pytest.raises(ValidationError):
        store.download("../secrets.txt")


def test_local_store_missing_file(tmp_path):
    with pytest.raises(DownloadError, match="user-1/missing.pdf"):
        LocalFileStore(str(tmp_path)).download("user-1/missing.pdf")


@pytest.mark.parametrize("name, expected", [
    ("a.pdf", "application/pdf"),
    ("a.jpg", "image/jpeg"),
    ("a.webp", "image/webp"),
    ("a.unknown-ext", "application/octet-stream"),
])
def test_guess_content_type(name, expected):
    assert guess_content_type(name) == expected


def test_build_file_store_defaults_to_local(tmp_path):
    store = build_file_store(make_settings(upload_dir=str(tmp_path)))
    assert isinstance(store, LocalFileStore)


def test_supabase_backend_requires_credentials():
    with pytest.raises(RuntimeError, match="SUPABASE_URL"):
        build_file_store(make_settings(storage_backend="supabase", supabase_url=None))
