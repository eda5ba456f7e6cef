"""
Provider contract shared by the local, remote and hybrid backends.

Every provider answers the same six calls per collection:

    list(collection)                 -> [record]
    get(collection, id)              -> record        NotFoundError
    create(collection, draft)        -> record        ValidationError
    update(collection, id, partial)  -> record        NotFoundError / ValidationError
    delete(collection, id)           -> None          NotFoundError
    put(collection, record)          -> record        upsert of a full record

`provider.products`, `provider.orders`, ... are EntityCollection views that
bind the collection name, so callers can write provider.products.create({...}).
"""

from chabs.core.errors import ValidationError
from chabs.core.models import COLLECTIONS


class EntityCollection:
    """One collection of one provider."""

    def __init__(self, provider, name: str):
        self._provider = provider
        self.name = name

    def list(self):
        return self._provider.list(self.name)

    def get(self, record_id: str):
        return self._provider.get(self.name, record_id)

    def create(self, draft: dict):
        return self._provider.create(self.name, draft)

    def update(self, record_id: str, partial: dict):
        return self._provider.update(self.name, record_id, partial)

    def delete(self, record_id: str):
        return self._provider.delete(self.name, record_id)

    def put(self, record: dict):
        return self._provider.put(self.name, record)

    def __len__(self):
        return len(self.list())

    def __repr__(self):
        return f"<EntityCollection {self.name} of {type(self._provider).__name__}>"


class ProviderBase:
    """Common surface. Subclasses implement the six CRUD calls."""

    kind = "base"

    def __getattr__(self, name):
        # Only reached when normal lookup fails
        if name in COLLECTIONS:
            return EntityCollection(self, name)
        raise AttributeError(f"{type(self).__name__} has no attribute '{name}'")

    def collection(self, name: str) -> EntityCollection:
        self._check_collection(name)
        return EntityCollection(self, name)

    @staticmethod
    def _check_collection(name: str):
        if name not in COLLECTIONS:
            raise ValidationError([f"unknown collection '{name}'"])

    def list(self, collection: str) -> list:
        raise NotImplementedError

    def get(self, collection: str, record_id: str) -> dict:
        raise NotImplementedError

    def create(self, collection: str, draft: dict) -> dict:
        raise NotImplementedError

    def update(self, collection: str, record_id: str, partial: dict) -> dict:
        raise NotImplementedError

    def delete(self, collection: str, record_id: str) -> None:
        raise NotImplementedError

    def put(self, collection: str, record: dict) -> dict:
        raise NotImplementedError

    def close(self):
        pass
