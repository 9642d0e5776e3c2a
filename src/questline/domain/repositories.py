from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

from questline.domain.models.dependency import ContentDefinitions
from questline.domain.models.progress import ProgressRecord


class RemoteProgressStore(ABC):
    """Network-side progress store keyed by (owner_id, entity_id).

    Implementations keep the record with the greater updated_at, so resending a
    record that is already stored is a no-op. Failures raise RemoteStoreError.
    """

    @abstractmethod
    async def upsert(self, record: ProgressRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    async def batch_upsert(self, records: Sequence[ProgressRecord]) -> int:
        raise NotImplementedError

    @abstractmethod
    async def fetch_since(self, since: Optional[datetime]) -> List[ProgressRecord]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ContentDefinitionProvider(ABC):
    @abstractmethod
    def load_definitions(self) -> ContentDefinitions:
        raise NotImplementedError
