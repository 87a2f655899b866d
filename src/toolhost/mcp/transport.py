"""
Stdio transport - spawn a capability server and bridge its stdin/stdout
into the memory streams expected by `mcp.ClientSession`.

We own the subprocess here (instead of using `mcp.stdio_client`) so that the
connection can watch for process exit and terminate the child forcibly.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Mapping, Optional, Tuple

import anyio
from anyio.abc import ObjectReceiveStream, ObjectSendStream
from loguru import logger
from mcp.shared.message import SessionMessage
from mcp.types import JSONRPCMessage


# Only these variables are forwarded from the host environment.
FORWARDED_ENV_VARS = (
    "PATH",
    "HOME",
    "USER",
    "LOGNAME",
    "SHELL",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "LC_MESSAGES",
    "TMPDIR",
    "TEMP",
    "TMP",
)
WINDOWS_ENV_VARS = ("USERPROFILE", "APPDATA", "LOCALAPPDATA", "SYSTEMROOT")

STREAM_LIMIT = 10 * 1024 * 1024
TERMINATE_GRACE_SECONDS = 2.0


def build_server_env(
    extra: Optional[Mapping[str, str]] = None,
    *,
    source: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    source = os.environ if source is None else source
    names = FORWARDED_ENV_VARS + (WINDOWS_ENV_VARS if sys.platform == "win32" else ())

    env = {k: source[k] for k in names if source.get(k)}
    for key, value in (extra or {}).items():
        key = str(key or "").strip()
        if not key or "=" in key:
            logger.warning(f"Skipping invalid environment variable name: {key!r}")
            continue
        if value is None or not str(value).strip():
            logger.warning(f"Skipping empty environment variable: {key}")
            continue
        env[key] = str(value).strip()
    return env


def resolve_command(command: str, env: Optional[Mapping[str, str]] = None) -> str:
    path = (env or {}).get("PATH") or os.environ.get("PATH")
    return shutil.which(command, path=path) or command


async def spawn_process(
    command: str,
    args: List[str],
    *,
    env: Dict[str, str],
    cwd: Optional[str] = None,
) -> asyncio.subprocess.Process:
    logger.debug(f"Spawning: {command} {' '.join(args)} (env keys: {sorted(env)})")
    return await asyncio.create_subprocess_exec(
        command,
        *args,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
        cwd=cwd,
        limit=STREAM_LIMIT,
    )


async def terminate_process(process: Optional[asyncio.subprocess.Process], *, name: str = "") -> None:
    if process is None or process.returncode is not None:
        return
    try:
        if process.stdin and not process.stdin.is_closing():
            process.stdin.close()
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
        logger.debug(f"Terminated process for {name or 'server'} (pid={process.pid})")
    except ProcessLookupError:
        pass


@asynccontextmanager
async def process_streams(
    process: asyncio.subprocess.Process,
    *,
    name: str = "",
) -> AsyncIterator[Tuple[ObjectReceiveStream, ObjectSendStream]]:
    """Yield (read_stream, write_stream) for a ClientSession over the process pipes."""
    read_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_reader = anyio.create_memory_object_stream(0)

    async def stdout_pump() -> None:
        assert process.stdout is not None
        async with read_writer:
            while True:
                try:
                    line = await process.stdout.readline()
                except (ValueError, OSError) as e:
                    logger.warning(f"[{name}] stdout read failed: {e}")
                    return
                if not line:
                    return
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    message = JSONRPCMessage.model_validate_json(text)
                except Exception as exc:
                    logger.debug(f"[{name}] ignoring non-protocol output: {text[:200]}")
                    await read_writer.send(exc)
                    continue
                await read_writer.send(SessionMessage(message))

    async def stdin_pump() -> None:
        assert process.stdin is not None
        async with write_reader:
            async for session_message in write_reader:
                payload = session_message.message.model_dump_json(by_alias=True, exclude_none=True)
                try:
                    process.stdin.write((payload + "\n").encode("utf-8"))
                    await process.stdin.drain()
                except (BrokenPipeError, ConnectionResetError) as e:
                    logger.debug(f"[{name}] stdin closed: {e}")
                    return

    async def stderr_pump() -> None:
        if process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            logger.debug(f"[{name}] {line.decode('utf-8', errors='replace').rstrip()}")

    async with anyio.create_task_group() as tg:
        tg.start_soon(stdout_pump)
        tg.start_soon(stdin_pump)
        tg.start_soon(stderr_pump)
        try:
            yield read_stream, write_stream
        finally:
            tg.cancel_scope.cancel()
