"""
follower_directory.py
---------------------
Read-only view of follower accounts.  The fan-out engine only needs the two
contract methods; the in-memory directory backs tests and local runs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from models.follower import Follower


class FollowerDirectory(ABC):
    @abstractmethod
    def list_eligible_followers(self, master_id: Optional[str] = None) -> List[Follower]:
        """Active, consenting followers of ``master_id`` (all masters if None)."""
        raise NotImplementedError

    @abstractmethod
    def get_follower(self, follower_id: str) -> Optional[Follower]:
        raise NotImplementedError


class InMemoryFollowerDirectory(FollowerDirectory):
    def __init__(self, followers: Iterable[Follower] = ()) -> None:
        self._followers: Dict[str, Follower] = {}
        for follower in followers:
            self.add(follower)

    def add(self, follower: Follower) -> None:
        self._followers[follower.id] = follower

    def set_copy_trading(self, follower_id: str, enabled: bool) -> Follower:
        follower = self._followers.get(follower_id)
        if follower is None:
            raise KeyError(f"Follower not found: {follower_id}")
        updated = replace(follower, copy_trading_enabled=enabled)
        self._followers[follower_id] = updated
        return updated

    def list_eligible_followers(self, master_id: Optional[str] = None) -> List[Follower]:
        return [
            f for f in self._followers.values()
            if f.is_eligible and (master_id is None or f.master_id in (None, master_id))
        ]

    def get_follower(self, follower_id: str) -> Optional[Follower]:
        return self._followers.get(follower_id)
