"""Backup container naming.

The first backup of ``container-env-test`` is ``rollback_container_env_test``.
If that name is already used in the runtime, or was handed out earlier and not
yet released, the next free generation suffix is appended
(``rollback_container_env_test_2``, ``_3``, ...).

The original name is never recovered by parsing a backup name; the recreate
flow carries it on its RollbackRecord.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Collection

import structlog

logger = structlog.get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9]")


class NameAllocator:
    """Derives collision-resistant backup names.

    Attributes:
        prefix: Prefix prepended to every backup name.
    """

    def __init__(self, prefix: str = "rollback_") -> None:
        self.prefix = prefix
        self._issued: set[str] = set()
        self._mutex = threading.Lock()

    def base_name(self, original_name: str) -> str:
        """First-generation backup name for ``original_name``."""
        return self.prefix + _UNSAFE_CHARS.sub("_", original_name.lstrip("/"))

    def backup_name(
        self,
        original_name: str,
        taken: Collection[str] | Callable[[str], bool] = (),
    ) -> str:
        """Allocate a backup name that is not taken and not already issued.

        Args:
            original_name: Canonical container name being backed up.
            taken: Names already present in the runtime, as a collection or a
                membership predicate.

        Returns:
            The allocated backup name, reserved until ``release`` is called.
        """
        is_taken = taken if callable(taken) else taken.__contains__
        base = self.base_name(original_name)

        with self._mutex:
            candidate = base
            generation = 1
            while candidate in self._issued or is_taken(candidate):
                generation += 1
                candidate = f"{base}_{generation}"
            self._issued.add(candidate)

        logger.debug(
            "backup_name_allocated",
            original_name=original_name,
            backup_name=candidate,
            generation=generation,
        )
        return candidate

    def release(self, backup_name: str) -> None:
        """Forget an issued name once its backup container no longer exists."""
        with self._mutex:
            self._issued.discard(backup_name)

    def issued(self) -> frozenset[str]:
        with self._mutex:
            return frozenset(self._issued)
