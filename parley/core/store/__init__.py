"""State container: frozen state tree, tagged actions and pure reducers."""

from parley.core.store.state import AppState, PersistedState
from parley.core.store.store import Store

__all__ = ["AppState", "PersistedState", "Store"]
