#!/usr/bin/env python3
"""
mk - filesystem-backed containers behind a local control socket

Usage:
    mk CMD [ARGS...]              Start an engine in ROOT and send it:
                                      in CMD / start ARGS / wait / die
    mk --engine OP [ARGS...]      Internal: perform OP in the current container

    Internal ops (run by the engine inside a container directory):
        exec PATH [ARGS...]       Record and run a command in the container

Options:
    -r, --root DIR        Engine root (default: .)
    --log-level LVL       debug, info, warning, error (default: warning)
"""

import argparse
import os
import sys
from pathlib import Path

import anyio
from rich.console import Console
from rich.markup import escape

from mk_engine import Engine, SelfDelegate
from mk_errors import EngineError
from mk_log import LEVELS, LogConfig
from mk_store import Container, new_root_container

# ============================================================================
# Constants
# ============================================================================

SELF_ARGV = [sys.executable, str(Path(__file__).resolve())]

console = Console(stderr=True)


def error(msg: str):
    """Print error and exit."""
    console.print(f"[red]error:[/red] {escape(msg)}", soft_wrap=True)
    sys.exit(1)


# ============================================================================
# Client
# ============================================================================

def client_commands(cmd: str, args: list[str]) -> list[str]:
    """The fixed command sequence the CLI sends for `mk CMD ARGS...`."""
    return [
        "in " + cmd,
        "start " + "\x00".join(args),
        "wait",
        "die",
    ]


async def send_commands(ctl: Path, commands: list[str]) -> str:
    """Send commands, half-close, and return whatever the engine answers."""
    async with await anyio.connect_unix(ctl) as stream:
        await stream.send("\n".join(commands).encode())
        await stream.send_eof()
        return (await read_reply(stream)).decode("utf-8", errors="replace")


async def read_reply(stream) -> bytes:
    """Read until the engine closes.

    An engine that stops on an error closes with our later lines unread, which
    resets the connection once its reply has been drained.
    """
    reply = b""
    try:
        async for chunk in stream:
            reply += chunk
    except anyio.BrokenResourceError:
        pass
    return reply


async def run_client(engine: Engine, cmd: str, args: list[str]) -> str:
    """Serve on engine's socket just long enough to run one client session."""
    async with anyio.create_task_group() as tg:
        await tg.start(engine.listen_and_serve)
        try:
            return await send_commands(engine.path("ctl"), client_commands(cmd, args))
        finally:
            tg.cancel_scope.cancel()


# ============================================================================
# Internal engine mode
# ============================================================================

async def engine_exec(container: Container, args: list[str]):
    """Record argv as an unnamed command in container and run it attached."""
    cmd = container.new_command("", args[0], *args[1:])
    await cmd.run()


ENGINE_OPS = {
    "exec": engine_exec,
}


def run_engine_op(op: str, args: list[str]):
    handler = ENGINE_OPS.get(op)
    if handler is None:
        error(f"No such command: {op}")
    if not args or not args[0]:
        error(f"{op}: missing command")
    cwd = Path(os.getcwd())
    container = Container(cwd.name, cwd)
    try:
        anyio.run(handler, container, args)
    except (EngineError, OSError) as e:
        error(str(e))


# ============================================================================
# CLI
# ============================================================================

def first_error(exc: BaseException) -> BaseException:
    """Innermost first exception of a (possibly nested) task group failure."""
    while isinstance(exc, BaseExceptionGroup):
        exc = exc.exceptions[0]
    return exc


def main():
    parser = argparse.ArgumentParser(description="Filesystem-backed containers behind a local control socket")
    parser.add_argument("-r", "--root", default=".", help="Engine root")
    parser.add_argument("--log-level", default="warning", choices=list(LEVELS), help="Log level")
    parser.add_argument("--engine", action="store_true", help=argparse.SUPPRESS)
    parser.add_argument("command", help="Command")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments")

    args = parser.parse_args()

    # Internal mode: re-invoked by the engine inside a container directory
    if args.engine:
        run_engine_op(args.command.lower(), args.args)
        return

    try:
        c0 = new_root_container(args.root, SELF_ARGV)
    except OSError as e:
        error(str(e))

    engine = Engine(
        c0,
        log_config=LogConfig(args.log_level),
        delegate=SelfDelegate(SELF_ARGV),
    )
    try:
        response = anyio.run(run_client, engine, args.command, args.args)
    except BaseExceptionGroup as eg:
        failures, _ = eg.split((EngineError, OSError))
        if failures is None:
            raise
        error(str(first_error(failures)))
    except (EngineError, OSError) as e:
        error(str(e))
    finally:
        engine.cleanup()

    if response:
        error("Engine error: " + response.rstrip("\n"))


if __name__ == "__main__":
    main()
