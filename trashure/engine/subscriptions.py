"""
TRASHURE Ledger: change subscriptions

Paths look like Firebase refs: `accounts/<uid>`, `history/<uid>`. A listener
registered on `accounts` hears every account; one registered on
`accounts/<uid>` hears only that account.

All deliveries happen while holding `SubscriptionHub.lock`, so listeners see
changes one at a time and in the order the store committed them.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger("trashure.subscriptions")


@dataclass(frozen=True)
class Change:
    path: str
    doc:  Optional[Dict[str, Any]]

    @property
    def collection(self) -> str:
        return self.path.split("/", 1)[0]

    @property
    def key(self) -> str:
        return self.path.split("/", 1)[1] if "/" in self.path else ""


Listener = Callable[[Change], None]


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p)


def path_matches(prefix: str, path: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


class SubscriptionHub:

    def __init__(self):
        self.lock       = threading.RLock()
        self._listeners: Dict[int, Tuple[str, Listener]] = {}
        self._ids       = itertools.count(1)

    def add(self, path: str, listener: Listener) -> Callable[[], None]:
        with self.lock:
            token = next(self._ids)
            self._listeners[token] = (path, listener)

        def unsubscribe() -> None:
            with self.lock:
                self._listeners.pop(token, None)

        return unsubscribe

    def dispatch(self, change: Change) -> None:
        with self.lock:
            targets = [
                listener for prefix, listener in list(self._listeners.values())
                if path_matches(prefix, change.path)
            ]
            for listener in targets:
                try:
                    listener(change)
                except Exception as e:
                    # Display listeners never get to undo a commit.
                    logger.error(f"[HUB] Listener failed for {change.path}: {e}", exc_info=True)

    def __len__(self) -> int:
        with self.lock:
            return len(self._listeners)
