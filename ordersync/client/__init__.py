"""Viewer-side helpers for editing orders against a live sync stream."""

from ordersync.client.resolver import ClientDraft, ConflictResolver, DraftState

__all__ = ["ClientDraft", "ConflictResolver", "DraftState"]
