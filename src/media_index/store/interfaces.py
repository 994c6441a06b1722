from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional, Protocol, Sequence

EntryKind = Literal["file", "folder"]


@dataclass(frozen=True, slots=True)
class StoreEntry:
    name: str
    path: str
    kind: EntryKind
    ext: str = ""
    last_modified_at: Optional[datetime] = None


class ContentStore(Protocol):
    """
    Path-addressed remote store holding both the content tree and the scan state files.

    Every call is a suspension point. Implementations raise `ContentStoreError`
    on transport failures and `ContentNotFoundError` for a missing path.
    """

    async def list(self, path: str) -> Sequence[StoreEntry]:
        ...

    async def read(self, path: str) -> str:
        ...

    async def write(self, path: str, content: str) -> None:
        ...

    async def exists(self, path: str) -> bool:
        ...
