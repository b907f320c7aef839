"""Idempotency filter for incoming batches.

A reading is keyed by (stream_id, message_id). Readings without a message id
always pass. A keyed reading is dropped if storage already holds the key or if
an earlier reading in the same batch carried it.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence
from uuid import UUID

from .normalization import RawReading

logger = logging.getLogger(__name__)

KeyLookup = Callable[[Mapping[UUID, Sequence[str]]], set[tuple[UUID, str]]]


@dataclass(frozen=True, slots=True)
class DedupResult:
    """Positions refer to the submitted batch, in submission order."""

    unique_positions: tuple[int, ...]
    duplicate_positions: tuple[int, ...]

    @property
    def duplicate_count(self) -> int:
        return len(self.duplicate_positions)

    def unique(self, readings: Sequence[RawReading]) -> list[RawReading]:
        return [readings[i] for i in self.unique_positions]


def message_ids_by_stream(readings: Sequence[RawReading]) -> dict[UUID, list[str]]:
    grouped: dict[UUID, list[str]] = defaultdict(list)
    for reading in readings:
        key = reading.idempotency_key
        if key is None:
            continue
        stream_id, message_id = key
        if message_id not in grouped[stream_id]:
            grouped[stream_id].append(message_id)
    return dict(grouped)


def deduplicate(readings: Sequence[RawReading], lookup_existing: KeyLookup) -> DedupResult:
    """Filter ``readings`` in submission order.

    ``lookup_existing`` is called at most once with every distinct message id
    per stream and returns the keys already in storage.
    """
    if not readings:
        return DedupResult(unique_positions=(), duplicate_positions=())

    grouped = message_ids_by_stream(readings)
    seen: set[tuple[UUID, str]] = set(lookup_existing(grouped)) if grouped else set()

    unique: list[int] = []
    duplicates: list[int] = []
    for position, reading in enumerate(readings):
        key = reading.idempotency_key
        if key is None:
            unique.append(position)
            continue
        if key in seen:
            logger.debug("Duplicate reading detected: StreamId=%s, MessageId=%s", *key)
            duplicates.append(position)
            continue
        seen.add(key)
        unique.append(position)

    return DedupResult(unique_positions=tuple(unique), duplicate_positions=tuple(duplicates))
