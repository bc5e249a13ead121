"""Agent engine persistence layer.

SQLite-backed stores for agent configuration, subscribers, actions and
their reasoning traces. Memory and learning stores live with their
subsystems but share the same connection and transaction helper.
"""

from abo.persistence.actions import ActionStore
from abo.persistence.configs import ConfigStore
from abo.persistence.database import close_db, init_db, transaction
from abo.persistence.subscribers import SubscriberStore

__all__ = [
    "ActionStore",
    "ConfigStore",
    "SubscriberStore",
    "close_db",
    "init_db",
    "transaction",
]
