"""Tests for pyhapcam."""
import asyncio


async def run_jobs():
    """Let fire-and-forget jobs run."""
    for _ in range(5):
        await asyncio.sleep(0)
