"""
mk engine: control socket, per-connection chains, op dispatch.

Wire protocol (unix stream socket at <root>/.docker/engine/ctl):

    <name> <arg0>\\x00<arg1>\\x00...\\n

One command per line, EOF ends the stream. On success the engine closes the
connection without writing anything; on the first failure it writes one line
of error text and closes.
"""

from __future__ import annotations

import contextlib
import signal
import stat
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, TextIO

import anyio
from anyio.abc import SocketStream
from anyio.streams.buffered import BufferedByteReceiveStream

from mk_errors import (
    CommandNotImplementedError,
    EngineError,
    FatalSocketError,
    NotFoundError,
    ProtocolParseError,
    UnknownCommandError,
)
from mk_log import Log, LogConfig
from mk_store import Container, mk_unique_dir

# ============================================================================
# Constants
# ============================================================================

ENGINE_DIR = ".docker/engine"
ENGINE_FLAG = "--engine"
MAX_LINE = 64 * 1024

# Everything catchable except the child-exit notification and the signals the
# Python runtime keeps ignored.
_UNHANDLED_SIGNALS = {
    signal.SIGKILL,
    signal.SIGSTOP,
    signal.SIGCHLD,
    signal.SIGPIPE,
    signal.SIGXFSZ,
}


def shutdown_signals() -> list[signal.Signals]:
    return sorted(
        s for s in signal.valid_signals()
        if isinstance(s, signal.Signals) and s not in _UNHANDLED_SIGNALS
    )


# ============================================================================
# Op - one parsed protocol line
# ============================================================================

@dataclass
class Op:
    name: str
    args: list[str]


def parse_op(line: str) -> Op:
    """Parse "<name> <args>" with NUL-separated args.

    Examples:
        "PULL ubuntu"    -> Op("pull", ["ubuntu"])
        "START "         -> Op("start", [""])
        "EXEC ls\\x00-l" -> Op("exec", ["ls", "-l"])
    """
    name, sep, rest = line.partition(" ")
    if not sep:
        raise ProtocolParseError(f"{line}: invalid format")
    return Op(name=name.lower(), args=rest.split("\x00"))


async def read_line(stream: BufferedByteReceiveStream) -> str | None:
    """Next line without its terminator, or None at EOF.

    A trailing line with no newline before EOF is still returned.
    """
    try:
        raw = await stream.receive_until(b"\n", MAX_LINE)
    except anyio.IncompleteRead:
        if not stream.buffer:
            return None
        raw = stream.buffer
        await stream.receive(len(raw))
    except anyio.DelimiterNotFound:
        raise ProtocolParseError(f"line exceeds {MAX_LINE} bytes") from None
    return raw.decode("utf-8", errors="replace").removesuffix("\r")


# ============================================================================
# Delegate - where generic ops go
# ============================================================================

class Delegate(ABC):
    """Execution target for ops that have no built-in handler."""

    @abstractmethod
    def argv(self, op: Op) -> list[str]:
        """Command line that performs op inside the context directory."""
        pass


class SelfDelegate(Delegate):
    """Re-invoke our own entry point in internal engine mode."""

    def __init__(self, self_argv: list[str]):
        self.self_argv = list(self_argv)

    def argv(self, op: Op) -> list[str]:
        return [*self.self_argv, ENGINE_FLAG, op.name, *op.args]


# ============================================================================
# Chain - per-connection dispatch state machine
# ============================================================================

class HandlerKind(Enum):
    BUILTIN = "builtin"
    DELEGATED = "delegated"


@dataclass
class Handler:
    kind: HandlerKind
    func: Callable[[Chain, list[str]], Awaitable[None]] | None = None


class Chain:
    """Holds the current container for one connection and runs its ops."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.context: Container | None = None
        self.log = engine.log.child("chain")

    def resolve(self, name: str) -> Handler:
        """Built-ins first, then the engine's delegate if it has one."""
        func = BUILTINS.get(name)
        if func is not None:
            return Handler(HandlerKind.BUILTIN, func)
        if self.engine.delegate is not None:
            return Handler(HandlerKind.DELEGATED)
        raise UnknownCommandError(name)

    async def op(self, line: str):
        """Parse and execute one protocol line."""
        await self.dispatch(parse_op(line))

    async def dispatch(self, op: Op):
        handler = self.resolve(op.name)
        if op.name not in ("in", "from") and self.context is None:
            self.context = await anyio.to_thread.run_sync(self.engine.create)
            self.log.debug("default_context", container=self.context.id)
        if handler.kind is HandlerKind.BUILTIN:
            await handler.func(self, op.args)
        else:
            await self._delegate(op)

    async def _delegate(self, op: Op):
        """Run op as a subprocess of the root container, in the context dir."""
        engine = self.engine
        argv = engine.delegate.argv(op)
        self.log.debug("delegate", op=op.name, container=self.context.id, argv=argv, output="server-local")
        cmd = await anyio.to_thread.run_sync(partial(
            engine.c0.new_command,
            "", argv[0], *argv[1:],
            dir=str(Path(ENGINE_DIR, "containers", self.context.id)),
        ))
        # Output goes to the engine's own streams, not back over the connection.
        await cmd.run(stdout=engine.stdout, stderr=engine.stderr)

    # -------------------------------------------------------------------------
    # Built-ins
    # -------------------------------------------------------------------------

    async def cmd_in(self, args: list[str]):
        self.context = await anyio.to_thread.run_sync(self.engine.get, args[0])
        self.log.debug("in", container=self.context.id)

    async def cmd_from(self, args: list[str]):
        src = await anyio.to_thread.run_sync(self.engine.get, args[0])
        ctx = await anyio.to_thread.run_sync(self.engine.create)
        self.log.warning("from", source=src.id, container=ctx.id, committed=False)
        self.context = ctx

    async def cmd_start(self, args: list[str]):
        raise CommandNotImplementedError("start")

    async def cmd_import(self, args: list[str]):
        print(f"Importing {args[0]}...", file=self.engine.stdout, flush=True)


BUILTINS: dict[str, Callable[[Chain, list[str]], Awaitable[None]]] = {
    "in": Chain.cmd_in,
    "from": Chain.cmd_from,
    "start": Chain.cmd_start,
    "import": Chain.cmd_import,
}


# ============================================================================
# Engine
# ============================================================================

class Engine:
    """Owns the root container and serves the control socket."""

    def __init__(
        self,
        c0: Container,
        log_config: LogConfig | None = None,
        delegate: Delegate | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ):
        self.c0 = c0
        self.delegate = delegate
        self.log = Log(log_config, "engine")
        self._stdout = stdout
        self._stderr = stderr
        self._bound = False

    @property
    def stdout(self) -> TextIO:
        return self._stdout or sys.stdout

    @property
    def stderr(self) -> TextIO:
        return self._stderr or sys.stderr

    def path(self, *p: str) -> Path:
        """<c0 root>/.docker/engine/<p>"""
        return self.c0.path(ENGINE_DIR, *p)

    def chain(self) -> Chain:
        return Chain(self)

    # -------------------------------------------------------------------------
    # Container namespace
    # -------------------------------------------------------------------------

    def get(self, name: str) -> Container:
        """Look up an existing container. Never creates anything."""
        if name in ("", ".", "..") or "/" in name:
            raise NotFoundError(f"{name!r}: invalid container name")
        root = self.path("containers", name)
        try:
            st = root.stat()
        except FileNotFoundError:
            raise NotFoundError(f"{name}: no such container") from None
        except OSError as e:
            raise NotFoundError(f"{name}: {e.strerror or e}") from e
        if not stat.S_ISDIR(st.st_mode):
            raise NotFoundError(f"{name}: not a directory")
        return Container(name, root)

    def create(self) -> Container:
        """Allocate a new container directory."""
        cid = mk_unique_dir(self.path("containers"))
        root = self.path("containers", cid)
        self.log.debug("create", container=cid, root=root)
        return Container(cid, root)

    # -------------------------------------------------------------------------
    # Socket lifecycle
    # -------------------------------------------------------------------------

    async def _listen(self):
        ctl = self.path("ctl")
        ctl.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        # create_unix_listener unlinks whatever is at ctl, so a live engine
        # has to be detected first.
        if ctl.exists() or ctl.is_symlink():
            try:
                probe = await anyio.connect_unix(ctl)
            except OSError:
                self.log.info("stale_socket", path=ctl)
                ctl.unlink(missing_ok=True)
            else:
                await probe.aclose()
                raise FatalSocketError(f"listen unix {ctl}: address already in use")
        try:
            listener = await anyio.create_unix_listener(ctl)
        except OSError as e:
            raise FatalSocketError(f"listen unix {ctl}: {e}") from e
        self._bound = True
        return listener

    async def listen_and_serve(
        self,
        ready: anyio.Event | None = None,
        handle_signals: bool = True,
        *,
        task_status=anyio.TASK_STATUS_IGNORED,
    ):
        """Bind the control socket and serve connections until it closes.

        Any handled signal closes the listener. Once the listener is closed
        (or accept fails for any other reason) FatalSocketError is raised and
        in-flight connections are cancelled.
        """
        listener = await self._listen()
        ctl = self.path("ctl")
        reason = "use of closed listener"
        async with listener, anyio.create_task_group() as tg:
            with anyio.CancelScope() as accepting:
                if handle_signals:
                    await tg.start(self._close_on_signal, listener, accepting)
                if ready is not None:
                    ready.set()
                task_status.started()
                self.log.debug("listen", path=ctl)
                while True:
                    try:
                        conn = await listener.accept()
                    except (OSError, anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
                        reason = str(e.__cause__ or e) or reason
                        break
                    self.log.debug("accept")
                    tg.start_soon(self.serve, conn)
            tg.cancel_scope.cancel()
        raise FatalSocketError(f"accept unix {ctl}: {reason}")

    async def _close_on_signal(self, listener, accepting: anyio.CancelScope, *, task_status=anyio.TASK_STATUS_IGNORED):
        with anyio.open_signal_receiver(*shutdown_signals()) as signals:
            task_status.started()
            async for sig in signals:
                self.log.warning("signal", signal=sig.name)
                await listener.aclose()
                # A closed fd does not wake a pending accept on every backend.
                accepting.cancel()

    async def serve(self, conn: SocketStream):
        """Run one connection's command stream through a fresh Chain."""
        chain = self.chain()
        lines = BufferedByteReceiveStream(conn)
        async with conn:
            try:
                while (line := await read_line(lines)) is not None:
                    self.log.debug("op", line=line)
                    await chain.op(line)
            except (anyio.BrokenResourceError, anyio.ClosedResourceError) as e:
                self.log.info("disconnected", error=repr(e))
            except (EngineError, OSError) as e:
                self.log.info("op_failed", error=str(e))
                with contextlib.suppress(anyio.BrokenResourceError, anyio.ClosedResourceError):
                    await conn.send(f"{e}\n".encode())

    def cleanup(self):
        """Remove the control socket if this engine bound it. Safe to call more than once."""
        if not self._bound:
            return
        self.log.debug("cleanup", path=self.path("ctl"))
        self.path("ctl").unlink(missing_ok=True)
        self._bound = False
