"""
.env loading: skipped in prod, .env.local overrides .env, shell wins over .env.
"""
import os

from copytrader.config.dotenv_loader import is_prod_environment, load_env_files


def _write_env_files(tmp_path):
    (tmp_path / ".env").write_text("CT_SHARED=base\nCT_BASE_ONLY=1\nCT_SHELL=from-file\n")
    (tmp_path / ".env.local").write_text("CT_SHARED=local\n")


def test_prod_is_the_default(monkeypatch):
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    assert is_prod_environment()


def test_prod_loads_nothing(tmp_path, monkeypatch):
    _write_env_files(tmp_path)
    monkeypatch.setenv("ENVIRONMENT", "prod")
    monkeypatch.delenv("CT_BASE_ONLY", raising=False)

    assert load_env_files(tmp_path) == []
    assert "CT_BASE_ONLY" not in os.environ


def test_dev_loads_local_over_base(tmp_path, monkeypatch):
    _write_env_files(tmp_path)
    monkeypatch.setenv("ENVIRONMENT", "dev")
    monkeypatch.setenv("CT_SHELL", "from-shell")
    for name in ("CT_SHARED", "CT_BASE_ONLY"):
        monkeypatch.delenv(name, raising=False)

    loaded = load_env_files(tmp_path)

    assert [p.name for p in loaded] == [".env", ".env.local"]
    assert os.environ["CT_SHARED"] == "local"
    assert os.environ["CT_BASE_ONLY"] == "1"
    assert os.environ["CT_SHELL"] == "from-shell"


def test_missing_files_are_ignored(tmp_path, monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "dev")
    assert load_env_files(tmp_path) == []
