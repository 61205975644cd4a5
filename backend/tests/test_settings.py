from __future__ import annotations

from pathlib import Path

import railmap.settings as settings_module
from railmap.settings import Settings


def test_out_dir_defaults_to_backend_out(monkeypatch) -> None:
    monkeypatch.delenv("OUT_DIR", raising=False)
    cfg = Settings(_env_file=None)
    backend_dir = Path(settings_module.__file__).resolve().parents[1]
    assert Path(cfg.out_dir) == backend_dir / "out"
    assert cfg.resolved_source_dump_dir() == backend_dir / "out" / "source"


def test_env_overrides_are_normalized(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("OUT_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_LEVEL", " debug ")
    monkeypatch.setenv("RAILWAY_SOURCE_DUMP_DIR", f"  {tmp_path / 'dumps'}  ")
    cfg = Settings(_env_file=None)
    assert cfg.out_dir == str(tmp_path)
    assert cfg.log_level == "DEBUG"
    assert cfg.resolved_source_dump_dir() == tmp_path / "dumps"
