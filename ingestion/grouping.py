"""
Group pending bundles into batches for a single staged-file load
"""

import enum
import logging
from datetime import date
from typing import List, Sequence

from schemas.export import BundleMeta

logger = logging.getLogger(__name__)


class GroupingMode(str, enum.Enum):
    INDIVIDUAL = "individual"
    BY_DAY = "by_day"


def bundle_day(meta: BundleMeta) -> date:
    """UTC calendar day of the bundle's start"""
    return meta.start.date()


class BundleGrouper:
    """
    Split an ordered list of bundles into load groups.

    INDIVIDUAL: every bundle is its own group and all of them are returned.
    BY_DAY: only the leading run of bundles sharing the first bundle's UTC
        day is returned. The scan stops at the first bundle from another day;
        anything after it is picked up by a later iteration. A trailing partial
        day is completed later when more bundles for that day arrive.
    """

    def __init__(self, mode: GroupingMode = GroupingMode.INDIVIDUAL):
        self.mode = GroupingMode(mode)

    @classmethod
    def from_flag(cls, group_by_day: bool) -> "BundleGrouper":
        return cls(GroupingMode.BY_DAY if group_by_day else GroupingMode.INDIVIDUAL)

    def group(self, bundles: Sequence[BundleMeta]) -> List[List[BundleMeta]]:
        if not bundles:
            return []

        if self.mode == GroupingMode.INDIVIDUAL:
            return [[b] for b in bundles]

        group_day = bundle_day(bundles[0])
        group = []
        for meta in bundles:
            if bundle_day(meta) != group_day:
                break
            group.append(meta)

        deferred = len(bundles) - len(group)
        if deferred:
            logger.info(
                f"Grouped {len(group)} bundles for {group_day.isoformat()}; "
                f"{deferred} bundles deferred to the next iteration"
            )
        return [group]

    def split(self, bundles: Sequence[BundleMeta]) -> List[List[BundleMeta]]:
        """All consecutive groups of `bundles`, used where nothing is deferred"""
        groups = []
        remaining = list(bundles)
        while remaining:
            group = self.group(remaining)
            groups.extend(group)
            remaining = remaining[sum(len(g) for g in group):]
        return groups
