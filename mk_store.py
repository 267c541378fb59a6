"""
mk store: containers and command records on the filesystem.

The filesystem is the database. A container is a directory, a command record
is a directory of small files under the container:

    <container>/.docker/run/exec/<name>/cmd        NUL-joined argv
    <container>/.docker/run/exec/<name>/env/<KEY>  value
    <container>/.docker/run/exec/<name>/wd         working dir (container-relative)

The only concurrency control anywhere is atomic create-if-absent directory
creation in mk_unique_dir(). Everything else assumes no two writers touch the
same named record at once.
"""

from __future__ import annotations

import codecs
import os
import secrets
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

import anyio
from anyio.abc import ByteReceiveStream

from mk_errors import CommandFailedError, FatalAllocationError, NotFoundError

# ============================================================================
# Constants
# ============================================================================

ROOT_ID = "c0"
EXEC_DIR = ".docker/run/exec"
MAX_SLOTS = 2**63 - 1
LAUNCHER_ALIASES = ("exec", "start", "stop", "commit")


# ============================================================================
# Identity & Allocation
# ============================================================================

def generate_id() -> str:
    """64 hex characters from 32 bytes of the OS CSPRNG."""
    return secrets.token_hex(32)


def mk_unique_dir(parent: str | os.PathLike) -> str:
    """Claim the lowest-numbered free slot under parent and return its name.

    os.makedirs(exist_ok=False) on the final component is the atomic claim:
    it succeeds for exactly one caller per name, across threads and processes.
    Scans from 0 every time.
    """
    for i in range(MAX_SLOTS):
        name = str(i)
        try:
            os.makedirs(os.path.join(parent, name), mode=0o700)
        except FileExistsError:
            continue
        return name
    raise FatalAllocationError(f"Cant allocate anymore children in {parent}")


def write_file(dst: Path, content: str):
    """Write content to dst, creating parent directories and truncating."""
    dst.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    dst.write_text(content)


def read_file(src: Path) -> str:
    return src.read_text()


# ============================================================================
# Container
# ============================================================================

@dataclass
class Container:
    """A filesystem-rooted execution context."""
    id: str
    root: Path

    def path(self, *segments: str) -> Path:
        """Join segments under the container root.

        Leading slashes are dropped so absolute-looking segments stay inside
        the root ("/usr/bin" -> <root>/usr/bin).
        """
        return Path(self.root, *(str(s).lstrip("/") for s in segments))

    def new_command(
        self,
        name: str,
        path: str,
        *args: str,
        env: list[str] | None = None,
        dir: str = "",
    ) -> Command:
        """Create and persist a command record. An empty name is allocated."""
        cmd = Command(
            name=name,
            path=path,
            args=list(args),
            env=list(env or []),
            dir=dir,
            container=self,
        )
        cmd.store()
        return cmd

    def get_command(self, name: str) -> Command:
        """Load a previously stored command record by exact name."""
        cmd = Command(name=name, path="", container=self)
        cmd.load()
        return cmd

    def base_env(self) -> list[str]:
        """Minimal environment pinned to the container root."""
        paths = [
            str(self.path(prefix, sub))
            for prefix in ("/usr/local", "/usr", "/")
            for sub in ("bin", "sbin")
        ]
        return [
            f"HOME={self.root}",
            f"PATH={':'.join(paths)}",
        ]


def new_root_container(root: str | os.PathLike, self_argv: list[str]) -> Container:
    """Return container c0 at root, bootstrapping <root>/.docker on first use.

    An existing .docker directory is left untouched. A failed bootstrap removes
    whatever it created.
    """
    c = Container(ROOT_ID, Path(os.path.abspath(root)))
    docker = c.path(".docker")
    if docker.is_dir():
        return c

    docker.mkdir(mode=0o700, parents=True)
    try:
        write_file(c.path(".docker/engine/id"), generate_id() + "\n")

        launcher = c.path(".docker/bin/docker")
        write_file(launcher, f'#!/bin/sh\nexec {shlex.join(self_argv)} "$@"\n')
        launcher.chmod(0o700)
        for alias in LAUNCHER_ALIASES:
            os.symlink("docker", c.path(".docker/bin", alias))

        write_file(c.path(".docker/run/main/cmd"), "docker\x00--engine")
    except BaseException:
        shutil.rmtree(docker, ignore_errors=True)
        raise
    return c


# ============================================================================
# Command Record
# ============================================================================

@dataclass
class Command:
    """A persisted process invocation scoped to a container."""
    name: str
    path: str
    container: Container = field(repr=False)
    args: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)
    dir: str = ""

    @property
    def argv(self) -> list[str]:
        return [self.path, *self.args]

    def record_path(self, *segments: str) -> Path:
        return self.container.path(EXEC_DIR, self.name, *segments)

    def _lock_name(self):
        if self.name:
            self.record_path().mkdir(mode=0o700, parents=True, exist_ok=True)
            return
        self.name = mk_unique_dir(self.container.path(EXEC_DIR))

    def store(self):
        """Write the record to disk, claiming a name first if it has none."""
        self._lock_name()
        write_file(self.record_path("cmd"), "\x00".join(self.argv))
        for kv in self.env:
            key, _, value = kv.partition("=")
            write_file(self.record_path("env", key), value)
        write_file(self.record_path("wd"), self.dir)

    def load(self):
        """Rebuild path, args and dir from disk.

        The environment is not read back: env/ files are written by store()
        but a reloaded record starts with an empty env.
        """
        try:
            cmdline = read_file(self.record_path("cmd"))
        except FileNotFoundError:
            raise NotFoundError(f"{self.name}: no such command") from None
        self.path, *self.args = cmdline.split("\x00")
        try:
            self.dir = read_file(self.record_path("wd"))
        except FileNotFoundError:
            self.dir = ""

    def environ(self) -> dict[str, str]:
        """Base env followed by explicit entries; later entries win."""
        merged = {}
        for kv in self.container.base_env() + self.env:
            key, _, value = kv.partition("=")
            merged[key] = value
        return merged

    async def run(self, stdout: TextIO | None = None, stderr: TextIO | None = None):
        """Run in the foreground inside the container.

        With a stream for stdout/stderr the child's output is copied there by
        concurrent tasks; with None the child inherits the stream.
        Raises CommandFailedError on a non-zero exit.
        """
        process = await anyio.open_process(
            self.argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE if stdout is not None else None,
            stderr=subprocess.PIPE if stderr is not None else None,
            cwd=self.container.path(self.dir),
            env=self.environ(),
        )
        async with process:
            async with anyio.create_task_group() as tg:
                if stdout is not None:
                    tg.start_soon(_copy, process.stdout, stdout)
                if stderr is not None:
                    tg.start_soon(_copy, process.stderr, stderr)
                code = await process.wait()
        if code != 0:
            raise CommandFailedError(self.path, code)


async def _copy(source: ByteReceiveStream, sink: TextIO):
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    async for chunk in source:
        sink.write(decoder.decode(chunk))
        sink.flush()
    tail = decoder.decode(b"", final=True)
    if tail:
        sink.write(tail)
        sink.flush()
