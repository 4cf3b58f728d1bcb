from badminton_signup.core.logging import get_logger
from badminton_signup.services.container import get_services
from badminton_signup.storage.mongo import MongoDocumentStore
from badminton_signup.storage.resilient import ResilientStore

log = get_logger(__name__)


async def init_db() -> None:
    """Create indexes (Mongo backend) and make sure a current session exists."""
    services = get_services()
    backend = services.store.backend if isinstance(services.store, ResilientStore) else services.store
    if isinstance(backend, MongoDocumentStore):
        await backend.ensure_indexes()
        log.info("db_indexes_ready", db=services.settings.mongodb_db_name)
    session = await services.lifecycle.current()
    log.info("db_ready", backend=services.settings.store_backend, current_session_id=session.id)


async def close_db() -> None:
    await get_services().store.close()
