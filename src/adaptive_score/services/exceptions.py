"""Shared service-layer exceptions."""

from __future__ import annotations


class SettingsRejected(Exception):
    """Serialized or partial settings failed validation and were not applied."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
