"""
Key-value settings store backed by the settings table.

Settings are grouped by category:
- 'appfolio': client_id, client_secret, database, status, last_success_at, last_error
- 'features': feature toggles such as 'notifications'

Reads always go to the database, so rotated credentials and toggled
features take effect on the next call without a restart.
"""

import logging
from typing import Any, Dict, Optional

from .date_utils import utc_now
from .models import Setting
from .session import SessionManager


logger = logging.getLogger(__name__)

CONNECTION_CATEGORY = 'appfolio'
FEATURES_CATEGORY = 'features'


class SettingsStore:
    """Category/key settings with JSON values."""

    def __init__(self, session_manager: SessionManager):
        """
        Initialize settings store.

        Args:
            session_manager: Session manager for database access
        """
        self.session_manager = session_manager

    def get(self, category: str, key: str, default: Any = None) -> Any:
        """
        Get a setting value.

        Args:
            category: Setting category (e.g., 'appfolio', 'features')
            key: Key within the category
            default: Value returned when the setting does not exist

        Returns:
            Stored value or default
        """
        with self.session_manager.session_scope() as session:
            setting = session.query(Setting).filter_by(category=category, key=key).first()
            if setting is None or setting.value is None:
                return default
            return setting.value

    def set(self, category: str, key: str, value: Any, description: Optional[str] = None) -> None:
        """
        Create or replace a setting value.

        Args:
            category: Setting category
            key: Key within the category
            value: JSON-serializable value
            description: Optional human description
        """
        with self.session_manager.session_scope() as session:
            setting = session.query(Setting).filter_by(category=category, key=key).first()
            if setting is None:
                setting = Setting(category=category, key=key)
                session.add(setting)
            setting.value = value
            if description is not None:
                setting.description = description
        logger.debug(f"Setting updated: {category}.{key}")

    def get_category(self, category: str) -> Dict[str, Any]:
        """Get every setting in a category as a dict."""
        with self.session_manager.session_scope() as session:
            rows = session.query(Setting).filter_by(category=category).all()
            return {row.key: row.value for row in rows}

    def is_feature_enabled(self, feature: str, default: bool = True) -> bool:
        """Check a feature toggle in the 'features' category."""
        return bool(self.get(FEATURES_CATEGORY, feature, default))

    # ========================================================================
    # Connection status
    # ========================================================================

    def mark_connection_success(self, category: str = CONNECTION_CATEGORY) -> None:
        """Record a successful sync against the connection."""
        self.set(category, 'status', 'connected')
        self.set(category, 'last_success_at', utc_now().isoformat())
        self.set(category, 'last_error', None)

    def mark_connection_error(self, message: str, category: str = CONNECTION_CATEGORY) -> None:
        """Record a run-level failure against the connection."""
        self.set(category, 'status', 'error')
        self.set(category, 'last_error', message[:1000])
        logger.warning(f"Connection '{category}' marked as error: {message}")
