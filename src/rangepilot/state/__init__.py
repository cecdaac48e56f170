"""
State persistence package.
"""

from rangepilot.state.instance_store import AtomicInstanceStore, InstanceStore

__all__ = [
    "AtomicInstanceStore",
    "InstanceStore",
]
