"""Interfaces the engine expects from the platform and the remote store."""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Protocol


class RemoteStore(Protocol):
    async def apply(self, table: str, operation: str, data: Dict[str, Any]) -> None:
        """Apply one mutation.

        Raises ``RemoteConnectivityError`` when the store cannot be reached and
        ``RemoteRejectedError`` when it refuses the write.
        """


class ConnectivitySource(Protocol):
    def current(self) -> Optional[bool]:
        """Last raw signal, ``None`` when the platform cannot tell."""

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register for raw online/offline signals; returns an unsubscribe callable."""


__all__ = ["ConnectivitySource", "RemoteStore"]
