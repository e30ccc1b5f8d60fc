import asyncio
from typing import BinaryIO


# Writes `data` to `output` while holding `lock`, which serializes all
# emissions of one server so that response lines never interleave.
async def emit_bytes(data: bytes, output: BinaryIO, lock: asyncio.Lock) -> None:
    async with lock:
        await asyncio.to_thread(_write_bytes, data, output)


def _write_bytes(data: bytes, output: BinaryIO) -> None:
    output.write(data)
    output.flush()
