"""
Crash-safe file replacement helpers shared by the session and checkpoint stores.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os


def write_json_atomic(path: Path, payload: Any) -> None:
    """
    Writes `payload` as JSON so that readers only ever observe the previous or the
    new content. The temp file lives in the same directory so `os.replace` stays on
    one filesystem.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


async def write_json_atomic_async(path: Path, payload: Any) -> None:
    """The non-blocking variant used from download tasks."""
    await aiofiles.os.makedirs(path.parent, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{id(payload)}.tmp")
    try:
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(payload, ensure_ascii=False))
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        await aiofiles.os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
