"""CLI entrypoint for the turn engine chat."""

from __future__ import annotations

import asyncio

from turnflow.chat_cli_runtime import main


if __name__ == "__main__":
    asyncio.run(main())
