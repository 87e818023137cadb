import logging
from typing import Any, Dict

from tortoise import Tortoise

from algosync.core.config import DB_URL

logging.getLogger('tortoise').setLevel(logging.INFO)

# Sync job, checkpoint and outbox tables live in the same database so one
# transaction can cover a status change and its event
MODELS_MODULES = [
    "algosync.models.sync_job",
    "algosync.models.checkpoint",
    "algosync.models.outbox",
]


def tortoise_config(db_url: str = DB_URL) -> Dict[str, Any]:
    """Tortoise config dict; also usable by migration tooling."""
    return {
        "connections": {"default": db_url},
        "apps": {
            "models": {
                "models": MODELS_MODULES,
                "default_connection": "default",
            },
        },
        "use_tz": True,
        "timezone": "UTC",
    }


async def init_db(db_url: str = DB_URL):
    """Connects the ORM and creates missing tables. The service must not start without it."""
    try:
        await Tortoise.init(config=tortoise_config(db_url))
        await Tortoise.generate_schemas(safe=True)
        print("Database ready: sync_jobs, data_sync_checkpoints, outbox_events.")
    except Exception as e:
        print(f"FATAL ERROR: Could not initialise database at {db_url}. Error: {e}")
        raise


async def close_db():
    await Tortoise.close_connections()
    print("Database connections closed.")
