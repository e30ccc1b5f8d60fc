import asyncio
import os
from pathlib import Path

import orjson

from .config import EngineConfig
from .editor import EditorServer
from .http import HTTPDiscoveryTransport


# CONFIGURATOR_CONFIG is an optional path to an EngineConfig JSON document.
# CONFIGURATOR_SCHEMAS is an optional path to a JSON object of static
# parameter schemas, keyed by connector id.
async def main():
    config = EngineConfig()
    if path := os.environ.get("CONFIGURATOR_CONFIG"):
        config = EngineConfig.load(path)

    schemas = {}
    if path := os.environ.get("CONFIGURATOR_SCHEMAS"):
        schemas = orjson.loads(Path(path).read_bytes())

    if not config.backendUrl:
        await EditorServer(schemas, None, config).serve()
        return

    async with HTTPDiscoveryTransport(config) as transport:
        await EditorServer(schemas, transport, config).serve()


asyncio.run(main())
