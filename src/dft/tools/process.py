"""Subprocess execution with a hard ceiling on buffered output.

Both pipes are drained concurrently in fixed-size chunks. Bytes past the limit
are read and discarded, so memory stays bounded while the child keeps running,
unless the caller asks for the child to be killed on overflow.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import IO, Any, Callable, Sequence

LOGGER = logging.getLogger(__name__)

READ_CHUNK_BYTES = 64 * 1024


@dataclass(slots=True)
class CapturedStream:
    data: bytes = b""
    overflowed: bool = False

    def decode(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class BoundedResult:
    args: str | Sequence[str]
    returncode: int
    stdout: CapturedStream
    stderr: CapturedStream

    @property
    def overflowed(self) -> bool:
        return self.stdout.overflowed or self.stderr.overflowed


def _drain(stream: IO[bytes], limit: int, captured: CapturedStream, on_overflow: Callable[[], None]) -> None:
    buffer = bytearray()
    with stream:
        for chunk in iter(lambda: stream.read(READ_CHUNK_BYTES), b""):
            room = limit - len(buffer)
            if room > 0:
                buffer.extend(chunk[:room])
            if len(chunk) > room and not captured.overflowed:
                captured.overflowed = True
                on_overflow()
    captured.data = bytes(buffer)


def run_bounded(
    args: str | Sequence[str],
    *,
    limit: int,
    kill_on_overflow: bool = False,
    **popen_kwargs: Any,
) -> BoundedResult:
    """Run ``args`` and keep at most ``limit`` bytes of each output stream.

    Raises :class:`OSError` when the process cannot be started.
    """

    process = subprocess.Popen(
        args,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        **popen_kwargs,
    )

    def stop() -> None:
        if not kill_on_overflow:
            return
        LOGGER.debug("Output limit of %s bytes exceeded; killing %r", limit, args)
        try:
            process.kill()
        except ProcessLookupError:
            pass

    if process.stdout is None or process.stderr is None:
        process.kill()
        raise OSError(f"no output pipes for {args!r}")
    stdout, stderr = CapturedStream(), CapturedStream()
    readers = [
        threading.Thread(target=_drain, args=(process.stdout, limit, stdout, stop), daemon=True),
        threading.Thread(target=_drain, args=(process.stderr, limit, stderr, stop), daemon=True),
    ]
    for reader in readers:
        reader.start()
    for reader in readers:
        reader.join()
    returncode = process.wait()
    return BoundedResult(args=args, returncode=returncode, stdout=stdout, stderr=stderr)


__all__ = ["BoundedResult", "CapturedStream", "READ_CHUNK_BYTES", "run_bounded"]
