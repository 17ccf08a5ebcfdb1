from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from oops.constants import INTERPRETER_MARKER, PYTHON_INTERPRETER_HINT
from oops.errors import ScriptError

LOGGER = logging.getLogger("oops.scripts")

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


def is_script(contents: Optional[str]) -> bool:
    return bool(contents) and contents.startswith(INTERPRETER_MARKER)


def interpreter_command(script_path: Path) -> List[str]:
    """Build the argv for a materialized script from its first line.

    Python-family interpreters receive the file as an argument; anything else is treated as a
    shell and receives ``-c <file>``. ``#!/usr/bin/env <name>`` resolves to ``<name>``.
    """
    with script_path.open("r", encoding="utf-8", errors="replace") as handle:
        first_line = handle.readline().strip()
    if not first_line.startswith(INTERPRETER_MARKER):
        raise ScriptError(f"{script_path.name}: unsupported script, missing {INTERPRETER_MARKER} line")
    parts = first_line[len(INTERPRETER_MARKER):].split()
    if not parts:
        raise ScriptError(f"{script_path.name}: empty interpreter line")
    runner = os.path.basename(parts[0])
    if runner == "env" and len(parts) > 1:
        runner = os.path.basename(parts[1])
    if PYTHON_INTERPRETER_HINT in runner:
        return [runner, str(script_path)]
    return [runner, "-c", str(script_path)]


class ScriptRunner:
    """Materialize inline scripts into a private work directory and run them.

    The child inherits the ambient environment plus ``env`` overrides. Each runner owns its
    directory; ``close`` removes it.
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None, workdir: Optional[Path] = None) -> None:
        self._env = dict(env or {})
        self._owns_workdir = workdir is None
        self._workdir = workdir or Path(tempfile.mkdtemp(prefix="oops_"))
        self._workdir.mkdir(parents=True, exist_ok=True)

    @property
    def workdir(self) -> Path:
        return self._workdir

    def script_path(self, *parts: object) -> Path:
        name = "_".join(_UNSAFE_NAME.sub("-", str(part)) for part in parts if part != "")
        return self._workdir / name

    def write_script(self, path: Path, contents: str) -> Path:
        try:
            path.write_text(contents, encoding="utf-8")
            path.chmod(0o755)
        except OSError as exc:
            raise ScriptError(f"cannot write script {path.name}: {exc}") from exc
        return path

    def environment(self) -> Dict[str, str]:
        merged = dict(os.environ)
        merged.update(self._env)
        return merged

    def run_script(self, path: Path) -> str:
        """Run a materialized script and return its combined stdout and stderr."""
        command = interpreter_command(path)
        LOGGER.debug("exec: %s", " ".join(command))
        try:
            completed = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=self.environment(),
                cwd=str(self._workdir),
                check=False,
            )
        except OSError as exc:
            raise ScriptError(f"{path.name}: cannot start {command[0]}: {exc}") from exc
        output = completed.stdout.decode("utf-8", errors="replace")
        if completed.returncode != 0:
            raise ScriptError(
                f"{path.name}: exit status {completed.returncode}",
                exit_code=completed.returncode,
                output=output,
            )
        return output

    def run(self, path: Path, contents: str) -> str:
        return self.run_script(self.write_script(path, contents))

    def resolve(self, contents: Optional[str], path: Path) -> Optional[str]:
        """Substitute a script value by its output; plain values are returned untouched.

        Trailing newlines of the output are dropped so ``echo`` results can be used as-is.
        """
        if not is_script(contents):
            return contents
        return self.run(path, contents).rstrip("\r\n")

    def close(self) -> None:
        if self._owns_workdir:
            shutil.rmtree(self._workdir, ignore_errors=True)

    def __enter__(self) -> "ScriptRunner":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
