from bidledger.stores.file import FileStore
from bidledger.stores.http import HttpStore, StoreError

__all__ = ["FileStore", "HttpStore", "StoreError"]
