from __future__ import annotations

import sys
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib


def test_version_matches_pyproject() -> None:
    """`chat_stream_relay.__version__` 必须与 pyproject.toml 的 project.version 一致。"""

    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    data = tomllib.loads(pyproject.read_text(encoding="utf-8"))

    from chat_stream_relay import __version__

    assert __version__ == data["project"]["version"]
