"""
Identity binder.

Maps the authenticated local user to the external customer id used by the
purchase service. At most one external identity is live at a time.
"""
import structlog
from typing import Optional

from horse_manager.identity.cache import IdentityCache


logger = structlog.get_logger()


class IdentityBinder:
    """
    One-way binding from local user id to purchase-service customer id.

    The external id is derived from the immutable backend user id, never
    from the email address, so accounts that reuse an email cannot share
    entitlements.

    Every change of binding bumps `generation`. Work started under one
    generation must not be committed under another.
    """

    def __init__(self, cache: Optional[IdentityCache] = None):
        """
        Initialize identity binder.

        Args:
            cache: Optional persisted identity cache
        """
        self.cache = cache
        self._local_user_id: Optional[str] = None
        restored = cache.load() if cache else None
        self._restored_user_id: Optional[str] = self.normalize_user_id(restored) if restored else None
        self.generation = 0

        if self._restored_user_id:
            logger.info("identity_restored", user_id=self._restored_user_id)

    @staticmethod
    def normalize_user_id(local_user_id: str) -> str:
        """Canonical form of a local user id, used for every comparison."""
        return local_user_id.strip()

    @classmethod
    def to_external_id(cls, local_user_id: str) -> str:
        """Derive the purchase-service customer id for a local user id."""
        return cls.normalize_user_id(local_user_id)

    @property
    def local_user_id(self) -> Optional[str]:
        return self._local_user_id

    @property
    def external_id(self) -> Optional[str]:
        """Currently live external customer id, or None when unbound."""
        if self._local_user_id is None:
            return None
        return self.to_external_id(self._local_user_id)

    @property
    def is_bound(self) -> bool:
        return self._local_user_id is not None

    @property
    def last_known_user_id(self) -> Optional[str]:
        """Bound user id, falling back to the one restored from the cache."""
        return self._local_user_id or self._restored_user_id

    def bind(self, local_user_id: str) -> str:
        """
        Bind a local user to its external customer id.

        Binding the already-bound user is a no-op. Binding a different user
        first unbinds the current one.

        Args:
            local_user_id: Immutable backend user id

        Returns:
            External customer id

        Raises:
            ValueError: If the user id is empty
        """
        if not local_user_id or not local_user_id.strip():
            raise ValueError("Cannot bind an empty user id")

        local_user_id = self.normalize_user_id(local_user_id)

        if self._local_user_id == local_user_id:
            return self.to_external_id(local_user_id)

        if self._local_user_id is not None:
            logger.info(
                "identity_switch",
                previous_user_id=self._local_user_id,
                user_id=local_user_id
            )
            self.unbind()

        self._local_user_id = local_user_id
        self._restored_user_id = None
        self.generation += 1

        if self.cache:
            self.cache.save(local_user_id)

        logger.info("identity_bound", user_id=local_user_id, generation=self.generation)
        return self.to_external_id(local_user_id)

    def unbind(self) -> None:
        """Clear the binding and the persisted identity."""
        had_identity = self._local_user_id is not None or self._restored_user_id is not None

        self._local_user_id = None
        self._restored_user_id = None

        if had_identity:
            self.generation += 1
            if self.cache:
                self.cache.clear()
            logger.info("identity_unbound", generation=self.generation)
