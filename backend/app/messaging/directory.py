"""User directory lookups.

Accounts live outside the messaging core. The core only needs to know
whether a user id exists, both to validate a message recipient and to
accept the authenticate frame on the live channel.
"""
from typing import Iterable, Protocol, Set


class UserDirectory(Protocol):
    """Anything that can answer "does this user exist?"."""

    async def user_exists(self, user_id: int) -> bool: ...


class OpenDirectory:
    """Accepts every positive user id.

    Default for deployments where the surrounding platform has already
    authenticated the caller and owns account state.
    """

    async def user_exists(self, user_id: int) -> bool:
        return user_id > 0


class StaticDirectory:
    """Fixed set of known users."""

    def __init__(self, user_ids: Iterable[int]) -> None:
        self._user_ids: Set[int] = set(user_ids)

    async def user_exists(self, user_id: int) -> bool:
        return user_id in self._user_ids
