import io
import shutil
import tempfile
from functools import partial
from pathlib import Path

import anyio
import pytest

from mk import read_reply
from mk_engine import Engine
from mk_store import Container, ROOT_ID


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def root():
    """Short engine root; unix socket paths are limited to ~108 bytes."""
    path = tempfile.mkdtemp(prefix="mk-", dir="/tmp")
    yield Path(path).resolve()
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def engine(root):
    return Engine(Container(ROOT_ID, root), stdout=io.StringIO(), stderr=io.StringIO())


async def _talk(engine: Engine, *payloads: bytes) -> list[bytes]:
    """Serve engine, send each payload on its own connection, return the replies."""
    replies = []
    async with anyio.create_task_group() as tg:
        await tg.start(partial(engine.listen_and_serve, handle_signals=False))
        for payload in payloads:
            async with await anyio.connect_unix(engine.path("ctl")) as stream:
                await stream.send(payload)
                await stream.send_eof()
                replies.append(await read_reply(stream))
        tg.cancel_scope.cancel()
    return replies


@pytest.fixture
def talk():
    return _talk
