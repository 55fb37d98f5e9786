from __future__ import annotations

import logging
from typing import Any

import redis.asyncio as redis

from placeblocks.schemas.blocks import ContentBlock, PlaceBlock

logger = logging.getLogger(__name__)


class BlockCache:
    """Read-through copies of hot blocks kept in Redis as JSON strings."""

    def __init__(self, client: Any, *, ttl_seconds: int = 3600, key_prefix: str = "placeblocks") -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, redis_url: str, *, ttl_seconds: int = 3600, key_prefix: str = "placeblocks") -> BlockCache:
        client = redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        return cls(client, ttl_seconds=ttl_seconds, key_prefix=key_prefix)

    async def close(self) -> None:
        await self.client.aclose()

    def place_key(self, block_id: str) -> str:
        return f"{self.key_prefix}:place:{block_id}"

    def content_key(self, block_id: str) -> str:
        return f"{self.key_prefix}:content:{block_id}"

    async def set_place(self, block: PlaceBlock) -> None:
        await self.client.set(self.place_key(block.id), block.model_dump_json(), ex=self.ttl_seconds)

    async def set_content(self, block: ContentBlock) -> None:
        await self.client.set(self.content_key(block.id), block.model_dump_json(), ex=self.ttl_seconds)

    async def get_place(self, block_id: str) -> PlaceBlock | None:
        raw = await self.client.get(self.place_key(block_id))
        if raw is None:
            return None
        return PlaceBlock.model_validate_json(raw)

    async def get_content(self, block_id: str) -> ContentBlock | None:
        raw = await self.client.get(self.content_key(block_id))
        if raw is None:
            return None
        return ContentBlock.model_validate_json(raw)

    async def invalidate(self, *block_ids: str) -> int:
        keys = [key for block_id in block_ids for key in (self.place_key(block_id), self.content_key(block_id))]
        if not keys:
            return 0
        return int(await self.client.delete(*keys))
