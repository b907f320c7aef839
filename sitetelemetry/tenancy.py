"""Request/task scoped site binding.

Every storage helper asks for the bound site through ``require_site()``. The
binding lives in a ``ContextVar`` so concurrent requests (threads or asyncio
tasks) never see each other's site.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator
from uuid import UUID

from .errors import TenantContextMissing

logger = logging.getLogger(__name__)

_current_site: ContextVar[UUID | None] = ContextVar("current_site", default=None)


def current_site() -> UUID | None:
    return _current_site.get()


def require_site() -> UUID:
    site_id = _current_site.get()
    if site_id is None:
        raise TenantContextMissing("No site is bound to the current context")
    return site_id


@contextmanager
def site_scope(site_id: UUID) -> Iterator[UUID]:
    """Bind ``site_id`` for the duration of the block, restoring the previous
    binding on every exit path (including exceptions)."""
    if site_id is None:
        raise TenantContextMissing("Cannot bind an empty site id")
    previous = _current_site.get()
    token = _current_site.set(site_id)
    if previous is not None and previous != site_id:
        logger.debug("Site scope switched %s -> %s", previous, site_id)
    try:
        yield site_id
    finally:
        _current_site.reset(token)
