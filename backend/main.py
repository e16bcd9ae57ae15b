import asyncio
import logging
import os

from rich.text import Text

from backend.core.registrar import register_app
from backend.utils.console import console

# To ensure compatibility with Windows event loop issues when using Granian and asyncpg,
# some libraries expect a selector-based event loop.
if os.name == "nt":
    logging.getLogger(__name__).info("Setting Windows event loop policy for asyncio")
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

console.print(Text('Starting service...', style='bold magenta'))

app = register_app()
