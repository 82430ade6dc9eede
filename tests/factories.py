"""
Builders and fakes shared by the test suite
"""

import gzip
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from schemas.export import BundleMeta

START_TIME = datetime(2023, 12, 31, tzinfo=timezone.utc)


def make_bundle(bundle_id: int, start: datetime, hours: float = 1) -> BundleMeta:
    return BundleMeta(id=bundle_id, start=start, stop=start + timedelta(hours=hours))


def gzip_records(records: List[Dict[str, Any]]) -> bytes:
    return gzip.compress(json.dumps(records).encode("utf-8"))


def sample_records(meta: BundleMeta, count: int = 2) -> List[Dict[str, Any]]:
    """Export records whose EventStart falls inside the bundle"""
    return [
        {
            "IndvId": meta.id * 100 + i,
            "SessionId": meta.id,
            "EventStart": (meta.start + timedelta(minutes=i)).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "EventType": "click",
            "PageUrl": f"https://shop.example.com/p/{i}",
            "user_plan_str": "pro",
        }
        for i in range(count)
    ]


class FakeExportClient:
    """
    In-memory export API.

    bodies maps bundle id to the raw body, or to a list of bodies/exceptions
    served one per download attempt (the last one repeats).
    """

    def __init__(self, bundles: List[BundleMeta], bodies: Dict[int, Any]):
        self.bundles = sorted(bundles, key=lambda b: (b.start, b.id))
        self.bodies = bodies
        self.list_calls: List[datetime] = []
        self.download_calls: List[int] = []

    async def list_bundles(self, since: datetime) -> List[BundleMeta]:
        self.list_calls.append(since)
        return [b for b in self.bundles if b.stop > since]

    async def download_bundle(self, bundle_id: int) -> bytes:
        self.download_calls.append(bundle_id)
        body = self.bodies[bundle_id]
        if isinstance(body, list):
            body = body.pop(0) if len(body) > 1 else body[0]
        if isinstance(body, BaseException):
            raise body
        return body
