from typing import TYPE_CHECKING, Any
from collections.abc import Iterator, MutableMapping

if TYPE_CHECKING:
    from .manager import SessionManager


class SessionData(MutableMapping[str, list]):
    """Session dict-like object.

    Maps entity types to the records a session holds; every access goes
    through the SessionManager, so an expired or cleaned session simply
    looks empty.

        view = manager.data("s1")
        view["patients"] = [{"id": 1}]
        view.patients  # same as view["patients"]
    """

    _internal_attrs = frozenset({'_manager', '_session_id'})

    def __init__(self, manager: "SessionManager", session_id: str) -> None:
        object.__setattr__(self, '_manager', manager)
        object.__setattr__(self, '_session_id', session_id)

    def __repr__(self) -> str:
        return (
            f'<HDS-Session [{self._session_id}, active:{self.active}] '
            f'types={list(self)}>'
        )

    # --- Properties ---

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def compartment_id(self):
        return self._manager.compartment_for(self._session_id)

    @property
    def active(self) -> bool:
        return self._session_id in self._manager

    @property
    def empty(self) -> bool:
        return len(self) == 0

    # --- Magic Methods ---

    def _entity_types(self) -> list[str]:
        declared = list(self._manager.data_types(self._session_id))
        if declared:
            return declared
        compartment_id = self.compartment_id
        if compartment_id is None:
            return []
        return self._manager.compartments.entity_types(compartment_id)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __iter__(self) -> Iterator[str]:
        for entity_type in self._entity_types():
            if self._manager.get_session_data(self._session_id, entity_type):
                yield entity_type

    def __contains__(self, key: object) -> bool:
        return bool(self._manager.get_session_data(self._session_id, str(key)))

    def __getitem__(self, key: str) -> list:
        records = self._manager.get_session_data(self._session_id, key)
        if not records:
            raise KeyError(key)
        return records

    def __setitem__(self, key: str, value: Any) -> None:
        self._manager.store_session_data(self._session_id, key, value)

    def __delitem__(self, key: str) -> None:
        if not self._manager.delete_session_data(self._session_id, key):
            raise KeyError(key)

    def __getattr__(self, key: str) -> Any:
        if key.startswith('_'):
            raise AttributeError(key)
        try:
            return self[key]
        except KeyError:
            raise AttributeError(key) from None

    def __setattr__(self, key: str, value: Any) -> None:
        if key in self._internal_attrs or key.startswith('_'):
            object.__setattr__(self, key, value)
        else:
            self[key] = value
