"""Transactional state store: settings, project document, fragments, feature shards, snapshots."""

from catalyst.state.store import StateStore

__all__ = ["StateStore"]
