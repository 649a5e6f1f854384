import os
import subprocess
from pathlib import Path
from typing import Callable, List, Sequence, Tuple, Union

import pytest

from trixie_setup.config import AppConfig, TargetUser
from trixie_setup.errors import ExecutionError

Stdout = Union[str, bytes, Callable[[List[str]], str]]


class FakeRunner:
    """
    Stand-in for CommandRunner.

    Responses are matched on a command prefix; the most recently added match
    wins. Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.responses: List[Tuple[Tuple[str, ...], int, Stdout, str]] = []
        self.calls: List[List[str]] = []

    def add(self, prefix: Sequence[str], stdout: Stdout = "", returncode: int = 0, stderr: str = "") -> None:
        self.responses.append((tuple(prefix), returncode, stdout, stderr))

    def commands(self, name: str) -> List[List[str]]:
        return [c for c in self.calls if c and c[0] == name]

    def run(self, cmd, ctx=None, check=True, input=None, text=True, retry=1):
        cmd = list(cmd)
        self.calls.append(cmd)
        returncode, stdout, stderr = 0, "", ""
        for prefix, rc, out, err in reversed(self.responses):
            if tuple(cmd[: len(prefix)]) == prefix:
                returncode, stderr = rc, err
                stdout = out(cmd) if callable(out) else out
                break
        if returncode != 0 and check:
            raise ExecutionError(cmd, returncode, stdout, stderr)
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)

    def succeeds(self, cmd, ctx=None) -> bool:
        return self.run(cmd, ctx=ctx, check=False).returncode == 0

    def output(self, cmd, ctx=None) -> str:
        return self.run(cmd, ctx=ctx).stdout


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def target(tmp_path: Path) -> TargetUser:
    home = tmp_path / "home" / "alice"
    home.mkdir(parents=True)
    return TargetUser(name="alice", home=home, uid=os.getuid(), gid=os.getgid())


@pytest.fixture
def config(tmp_path: Path, target: TargetUser) -> AppConfig:
    etc = tmp_path / "etc" / "apt"
    (etc / "sources.list.d").mkdir(parents=True)
    lists = tmp_path / "var" / "lib" / "apt" / "lists"
    lists.mkdir(parents=True)
    archives = tmp_path / "var" / "cache" / "apt" / "archives"
    archives.mkdir(parents=True)
    return AppConfig(
        TARGET=target,
        LOG_FILE=str(tmp_path / "trixie_setup.log"),
        SOURCES_LIST=etc / "sources.list",
        SOURCES_DIR=etc / "sources.list.d",
        KEYRING_DIR=tmp_path / "keyrings",
        APT_LISTS_DIR=lists,
        APT_ARCHIVES_DIR=archives,
        YTDLP_BIN=tmp_path / "bin" / "yt-dlp",
    )

