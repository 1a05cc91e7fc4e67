"""Signal store layer.

Persistence for signals, canonical state, trips, route points, parking
sessions and per-vehicle tracking, behind the :class:`SignalStore` protocol.
"""

from fleetstate.store.base import SignalStore
from fleetstate.store.memory import InMemorySignalStore
from fleetstate.store.mongo import MongoSignalStore

__all__ = ["InMemorySignalStore", "MongoSignalStore", "SignalStore"]
