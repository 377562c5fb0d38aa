"""Party document stores: the abstract interface and its implementations."""

from party.store.base import Mutation, MutationKind, PartyStore, PartySubscription
from party.store.memory import MemoryPartyStore
from party.store.sqlite import SqlitePartyStore

__all__ = [
    "MemoryPartyStore",
    "Mutation",
    "MutationKind",
    "PartyStore",
    "PartySubscription",
    "SqlitePartyStore",
]
