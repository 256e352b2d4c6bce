# services/chunk_planner.py
import math
from typing import List

from models.upload_models import Chunk
from services.errors import EmptySource

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024


def plan_chunks(file_size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[Chunk]:
    """Split ``file_size`` bytes into contiguous chunks of ``chunk_size``.

    Every chunk but the last is exactly ``chunk_size`` long; the last one
    holds the remainder.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if file_size < 0:
        raise ValueError("file_size cannot be negative")
    if file_size == 0:
        raise EmptySource()

    total_parts = math.ceil(file_size / chunk_size)
    return [
        Chunk(
            index=index,
            offset=index * chunk_size,
            length=min(chunk_size, file_size - index * chunk_size),
        )
        for index in range(total_parts)
    ]
