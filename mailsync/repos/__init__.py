from .blob_store import BlobStore, FileBlobStore, InMemoryBlobStore
from .cache_store import CacheStore, PendingMutation
from .draft import DraftRepo

__all__ = ["BlobStore", "CacheStore", "DraftRepo", "FileBlobStore", "InMemoryBlobStore", "PendingMutation"]
