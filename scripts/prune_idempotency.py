from __future__ import annotations

import asyncio

from clubcore.core.logging import configure_logging
from clubcore.services.idempotency import purge_expired_idempotency_records


async def prune() -> None:
    # Remove expired idempotency records for deployments that schedule cleanup externally.
    configure_logging()
    deleted = await purge_expired_idempotency_records()
    print(f"pruned_idempotency_records={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
