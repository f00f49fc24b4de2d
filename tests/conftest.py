import os
import stat
import sys
import tempfile
import textwrap
from pathlib import Path
from typing import Callable

import pytest

# Keep test runs from writing into the working tree's logs/ directory.
os.environ.setdefault("CAPTURECTL_LOG_FILE", str(Path(tempfile.mkdtemp(prefix="capturectl-logs-")) / "capturectl.log"))

posix_only = pytest.mark.skipif(os.name != "posix", reason="needs POSIX signals and shebang scripts")

WORKER_PRELUDE = """\
import json
import os
import sys
import time

args = sys.argv[1:]
"""


class FakeHandle:
    """Stands in for subprocess.Popen where no real process is needed."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode = None
        self.terminated = False
        self.killed = False

    def poll(self):
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


@pytest.fixture
def make_worker(tmp_path: Path) -> Callable[[str], Path]:
    """Write an executable Python script that plays the capture worker."""

    def _make(body: str, name: str = "worker.py") -> Path:
        script = tmp_path / "bin" / name
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text(f"#!{sys.executable}\n{WORKER_PRELUDE}{textwrap.dedent(body)}", encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _make
