from __future__ import annotations

import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SRC_PATH = PROJECT_ROOT / "src"
if SRC_PATH.exists() and str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_cli(tmp_path: Path) -> Callable[[str], str]:
    """Write an executable Python script standing in for the OpenCode CLI.

    ``body`` is dedented and placed after a shebang pointing at the running
    interpreter.  The script's directory is ``tmp_path / "bin"``.
    """

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _make(body: str, name: str = "opencode") -> str:
        script = bin_dir / name
        script.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
        script.chmod(0o755)
        return str(script)

    return _make
