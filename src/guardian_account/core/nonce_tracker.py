"""
Outside execution nonce tracking.

Prevents replay of signed outside executions by recording every consumed
nonce. Unlike transaction nonces, outside nonces are not sequential: any
unused value is accepted exactly once, so independent relayers never block
each other.
"""

from __future__ import annotations

import logging
from typing import Iterable, Set

from guardian_account.core.account_exceptions import DuplicatedOutsideNonceError
from guardian_account.core.logging_config import short_id

logger = logging.getLogger(__name__)


class OutsideNonceStore:
    """
    Set of consumed outside execution nonces for one account.

    Lives inside the owning component's state so a reverted transaction also
    un-consumes the nonce it used.
    """

    def __init__(self, used: Iterable[int] = ()) -> None:
        self._used: Set[int] = set(used)

    def is_valid_nonce(self, nonce: int) -> bool:
        """
        Check whether ``nonce`` has not been consumed yet.

        Args:
            nonce: Proposed outside execution nonce

        Returns:
            bool: True if the nonce can still be used
        """
        return nonce not in self._used

    def consume(self, nonce: int) -> None:
        """
        Mark ``nonce`` as used.

        Raises:
            DuplicatedOutsideNonceError: If the nonce was already consumed
        """
        if nonce in self._used:
            logger.warning(
                "Outside execution nonce reused",
                extra={"event": "nonce.duplicated", "nonce": short_id(nonce)},
            )
            raise DuplicatedOutsideNonceError(f"nonce {hex(nonce)} already used")
        self._used.add(nonce)

    def __len__(self) -> int:
        return len(self._used)

