from __future__ import annotations

from imgpress.core.storage import Storage


class ConsentState:
    def __init__(self, storage: Storage, granted: bool = False) -> None:
        self.storage = storage
        self._granted = granted

    @classmethod
    def load(cls, storage: Storage) -> ConsentState:
        return cls(storage, storage.read().get("consent_granted") is True)

    @property
    def granted(self) -> bool:
        return self._granted

    def grant(self) -> None:
        if self._granted:
            return
        self._granted = True
        self.storage.write(consent_granted=True)
