from dependency_injector import containers, providers

from mailsync.repos.cache_store import CacheStore
from mailsync.repos.draft import DraftRepo


class RepoContainer(containers.DeclarativeContainer):
    blob_store = providers.Dependency()

    cache_store = providers.Singleton(CacheStore, blob_store=blob_store)
    draft = providers.Singleton(DraftRepo, blob_store=blob_store)
