# test_config.py

import pytest
from pydantic import ValidationError

from Tagstash.config import Settings
from Tagstash.schemas import MAX_CONTENT_LENGTH


def test_import_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    s = Settings()
    assert s.import_chunk_size == 500
    assert s.import_max_records == 50_000
    assert s.import_max_content_length == 5000
    assert s.import_session_expiry_hours == 24
    assert s.metrics_endpoint_enabled is False


@pytest.mark.parametrize(
    "field", ["import_chunk_size", "import_max_records", "import_session_expiry_hours"]
)
def test_import_limits_must_be_positive(field):
    with pytest.raises(ValidationError):
        Settings(**{field: 0})


def test_toml_sections_map_to_fields(monkeypatch, tmp_path):
    (tmp_path / "config.toml").write_text(
        """
[app]
env = "staging"
port = 19000

[logging]
level = "debug"
console = "WARNING"
to_file = false

[import]
chunk_size = 250
max_records = 1000
resumable_list_limit = 3

[ops]
metrics_endpoint_enabled = true
""".lstrip()
    )
    monkeypatch.chdir(tmp_path)
    s = Settings()
    assert s.env == "staging"
    assert s.app_port == 19000
    assert s.logging_console == "WARNING"
    assert s.logging_file == "NONE"
    assert s.import_chunk_size == 250
    assert s.import_max_records == 1000
    assert s.import_resumable_list_limit == 3
    assert s.metrics_endpoint_enabled is True


def test_env_overrides_toml(monkeypatch, tmp_path):
    (tmp_path / "config.toml").write_text("[import]\nchunk_size = 250\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("IMPORT_CHUNK_SIZE", "100")
    assert Settings().import_chunk_size == 100


def test_content_length_can_only_lower_the_bundle_cap():
    assert Settings(import_max_content_length=200).import_max_content_length == 200
    assert Settings(import_max_content_length=MAX_CONTENT_LENGTH).import_max_content_length == 5000
    with pytest.raises(ValidationError):
        Settings(import_max_content_length=MAX_CONTENT_LENGTH + 1)
