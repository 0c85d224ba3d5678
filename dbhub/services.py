"""Service container: store handles built once at startup and injected.

main.py builds one Services instance in the application lifespan and keeps
it on `app.state.services`; routers receive it through `get_services`.
"""

from fastapi import Request

from dbhub.cache import ResultCache
from dbhub.config import Settings, settings
from dbhub.database import MetadataDB
from dbhub.object_store import ObjectStore, create_object_store


class Services:
    """Holds the metadata DB, object store, result cache and settings."""

    def __init__(
        self,
        config: Settings,
        metadata: MetadataDB,
        object_store: ObjectStore,
        cache: ResultCache,
    ):
        self.config = config
        self.metadata = metadata
        self.object_store = object_store
        self.cache = cache

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "Services":
        metadata = MetadataDB()
        metadata.initialize()
        return cls(
            config=config,
            metadata=metadata,
            object_store=create_object_store(config),
            cache=ResultCache(metadata),
        )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the application's Services."""
    return request.app.state.services
