"""Ephemeral container and volume lifetimes."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence

from ..exceptions import EngineError
from .base import Engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def ephemeral_container(
    engine: Engine,
    image: str,
    binds: Sequence[str] = (),
    cmd: Sequence[str] = (),
    env: Sequence[str] = (),
    *,
    entrypoint: Sequence[str] | None = None,
    user: str | None = None,
    name: str | None = None,
) -> AsyncIterator[str]:
    """Create a container and force-remove it when the block exits.

    Yields:
        Container ID
    """
    container_id = await engine.create_container(
        image, binds, cmd, env, entrypoint=entrypoint, user=user, name=name
    )
    try:
        yield container_id
    finally:
        await remove_container(engine, container_id)


async def remove_container(engine: Engine, container_id: str) -> None:
    """Force-remove a container, logging instead of raising on failure."""
    try:
        await engine.remove(container_id)
    except EngineError as e:
        logger.warning("Failed to remove container %s: %s", container_id, e)


async def remove_volume(engine: Engine, name: str) -> None:
    """Remove a volume, logging instead of raising on failure."""
    try:
        await engine.remove_volume(name)
    except EngineError as e:
        logger.warning("Failed to remove volume %s: %s", name, e)
