"""Server-side reward catalog.

Prices always come from here, never from the client. The catalog is read once
when the application starts and is immutable afterwards.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from .models import RewardItem


class RewardCatalog:
    def __init__(self, rewards: Iterable[RewardItem]):
        self._rewards = tuple(rewards)
        self._by_id = {reward.id: reward for reward in self._rewards}

    @classmethod
    def from_file(cls, path: Path) -> "RewardCatalog":
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
        catalog = cls(RewardItem.model_validate(item) for item in data.get("rewards", []))
        logger.info("Loaded {} rewards from {}", len(catalog), path)
        return catalog

    def __len__(self) -> int:
        return len(self._rewards)

    def get(self, reward_id: str) -> Optional[RewardItem]:
        return self._by_id.get(reward_id)

    def available(self, category: Optional[str] = None) -> list[RewardItem]:
        rewards = [r for r in self._rewards if r.stock != 0]
        if category and category != "all":
            rewards = [r for r in rewards if r.category == category]
        return rewards


__all__ = ["RewardCatalog"]
