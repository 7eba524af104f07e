"""Resource handles with an explicit close capability."""

from __future__ import annotations

import structlog

logger = structlog.get_logger(__name__)


class Closable:
    """Handle that releases underlying resources on ``close``.

    The default implementation does nothing; driver adapters override it.
    """

    def close(self) -> None:
        return None


def close_quietly(resource: Closable | None, *, label: str) -> None:
    """Close ``resource``, logging instead of raising on failure."""

    if resource is None:
        return
    try:
        resource.close()
    except Exception as exc:  # noqa: BLE001 - cleanup must not mask the primary outcome
        logger.warning("resource.close_failed", resource=label, error=str(exc))
