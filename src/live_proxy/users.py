"""User directory lookups."""

from live_proxy.config import Config, User


class UserDirectory:
    """Resolves stable owner identities against the configured users."""

    def __init__(self, config: Config):
        self._user_map = {u.id: u for u in config.users}

    async def get_user(self, owner_id: str) -> User | None:
        """Return the user for owner_id, or None if unknown."""
        return self._user_map.get(owner_id)
