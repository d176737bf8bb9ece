from workforce.state.snapshots import SnapshotStore, StateStoreError

__all__ = ["SnapshotStore", "StateStoreError"]
