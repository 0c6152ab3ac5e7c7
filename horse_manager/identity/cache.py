"""
Local persisted identity cache.

Stores the last-known local user id so login, logout and account switches
that happen while the app is closed are detected on the next start.
"""
import json
import structlog
from pathlib import Path
from typing import Optional, Union


logger = structlog.get_logger()


class IdentityCache:
    """JSON file holding the last bound local user id."""

    def __init__(self, path: Union[str, Path]):
        """
        Initialize identity cache.

        Args:
            path: File used to persist the identity
        """
        self.path = Path(path)

    def load(self) -> Optional[str]:
        """
        Read the last-known local user id.

        Returns:
            User id, or None if nothing usable is stored
        """
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("identity_cache_unreadable", path=str(self.path), error=str(e))
            return None

        user_id = data.get("user_id") if isinstance(data, dict) else None
        if not isinstance(user_id, str) or not user_id.strip():
            return None

        return user_id

    def save(self, user_id: str) -> None:
        """Persist the bound local user id."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps({"user_id": user_id}), encoding="utf-8")
        except OSError as e:
            logger.error("identity_cache_save_failed", path=str(self.path), error=str(e))

    def clear(self) -> None:
        """Forget the persisted identity."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("identity_cache_clear_failed", path=str(self.path), error=str(e))
