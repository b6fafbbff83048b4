"""Explicit identity context handed to the pipeline and key derivation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .exceptions import SessionRequired
from .messaging import SESSION_CHANGED, InMemoryBus
from .models import normalize_identity

logger = logging.getLogger(__name__)


@dataclass
class VaultSession:
    bus: Optional[InMemoryBus] = None
    _identity: Optional[str] = field(default=None, init=False, repr=False)

    @classmethod
    def for_identity(cls, identity: str, bus: Optional[InMemoryBus] = None) -> "VaultSession":
        session = cls(bus=bus)
        session.connect(identity)
        return session

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def is_connected(self) -> bool:
        return self._identity is not None

    def connect(self, identity: str) -> str:
        normalized = normalize_identity(identity)
        if not normalized:
            raise SessionRequired("Cannot connect an empty identity")
        previous = self._identity
        self._identity = normalized
        logger.info("Session connected for %s", _short(normalized))
        self._publish("connected" if previous is None else "switched", previous)
        return normalized

    def switch(self, identity: str) -> str:
        return self.connect(identity)

    def disconnect(self) -> None:
        if self._identity is None:
            return
        previous = self._identity
        self._identity = None
        logger.info("Session disconnected for %s", _short(previous))
        self._publish("disconnected", previous)

    def require_identity(self) -> str:
        if self._identity is None:
            raise SessionRequired("Connect an identity first")
        return self._identity

    def _publish(self, change: str, previous: Optional[str]) -> None:
        if self.bus:
            self.bus.emit(SESSION_CHANGED, change=change, identity=self._identity, previous=previous)


def _short(identity: Optional[str]) -> str:
    if not identity:
        return "<none>"
    if len(identity) <= 10:
        return identity
    return f"{identity[:6]}...{identity[-4:]}"
