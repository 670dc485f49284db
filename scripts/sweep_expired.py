import asyncio
from loguru import logger
from tenant_idp.config import settings
from tenant_idp.main import build_store
from tenant_idp.oauth.schemas import utcnow


async def sweep_expired():
    """
    Delete expired authorization codes, tokens and SSO sessions. Meant to be run
    periodically by an external scheduler (cron, k8s CronJob).
    """
    store, engine = build_store(settings)
    try:
        counts = await store.purge_expired(utcnow())
        summary = ", ".join(f"{kind}={count}" for kind, count in counts.items())
        logger.success(f"Purged expired records: {summary}")
    finally:
        if engine is not None:
            await engine.dispose()


if __name__ == "__main__":
    asyncio.run(sweep_expired())
