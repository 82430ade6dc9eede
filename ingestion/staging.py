"""
Download a group of bundles and write them to one local staged file.
"""

import csv
import gzip
import logging
import os
import zlib
from pathlib import Path
from typing import List, Sequence

from core.config import settings
from core.exceptions import BundleDecodeError, RecordTransformError, StagingError
from ingestion.extractors.export_client import GZIP_MAGIC, ExportClient, decode_records
from ingestion.retry import RetryPolicy
from ingestion.transformers.record_transformer import RecordTransformer
from schemas.export import BundleMeta, StagedBatch

logger = logging.getLogger(__name__)


class BatchStager:
    """
    Turn bundles into a staged file in TMP_DIR.

    CSV output has no header row; every line has exactly one value per
    destination column, in destination order. JSON output is the bundle's
    decoded array as served, for storage-only runs.
    """

    def __init__(
        self,
        client: ExportClient,
        transformer: RecordTransformer,
        columns: Sequence[str],
        tmp_dir: str = None,
        save_as_json: bool = None,
        retry_policy: RetryPolicy = None
    ):
        self.client = client
        self.transformer = transformer
        self.columns = list(columns)
        self.tmp_dir = Path(tmp_dir or settings.TMP_DIR)
        self.save_as_json = settings.SAVE_AS_JSON if save_as_json is None else save_as_json
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.MAX_ATTEMPTS,
            default_wait=settings.DEFAULT_RETRY_AFTER
        )

    def filename(self, bundles: Sequence[BundleMeta]) -> Path:
        first = bundles[0]
        if self.save_as_json:
            return self.tmp_dir / f"{first.id}.json"
        if len(bundles) > 1:
            return self.tmp_dir / f"{first.id}-{first.start.strftime('%Y%m%d')}.csv"
        return self.tmp_dir / f"{first.id}.csv"

    async def download(self, meta: BundleMeta) -> bytes:
        return await self.retry_policy.call(
            lambda: self.client.download_bundle(meta.id),
            description=f"fetch export data for bundle {meta.id}",
            context={"bundle_id": meta.id, "start": meta.start.isoformat(), "stop": meta.stop.isoformat()}
        )

    async def stage(self, bundles: List[BundleMeta]) -> StagedBatch:
        """
        Download and write every bundle of the group.

        Records that fail to transform are logged and skipped; any other
        failure removes the partial file and propagates.

        Raises:
            BundleDownloadError: a bundle could not be fetched
            BundleDecodeError: a bundle body is not a JSON array
            StagingError: the staged file could not be written
        """
        if not bundles:
            raise StagingError("Cannot stage an empty group of bundles")
        if self.save_as_json and len(bundles) > 1:
            raise StagingError(
                "JSON output holds exactly one bundle",
                context={"bundle_ids": [b.id for b in bundles]}
            )

        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        batch = StagedBatch(bundles=list(bundles), path=self.filename(bundles))
        logger.info(
            f"Staging {len(bundles)} bundles starting with bundle {bundles[0].id} "
            f"(start: {bundles[0].start.isoformat()}) into {batch.path}"
        )

        try:
            if self.save_as_json:
                await self._write_json(batch)
            else:
                await self._write_csv(batch)
        except BaseException:
            self.cleanup(batch)
            raise
        return batch

    async def _write_json(self, batch: StagedBatch):
        meta = batch.first
        body = await self.download(meta)
        if body[:2] == GZIP_MAGIC:
            try:
                body = gzip.decompress(body)
            except (OSError, EOFError, zlib.error) as e:
                raise BundleDecodeError(
                    "Failed to decompress bundle body",
                    context={"bundle_id": meta.id},
                    original_exception=e
                )
        try:
            batch.path.write_bytes(body)
        except OSError as e:
            raise StagingError(
                f"Failed to create tmp json file {batch.path}",
                context={"filename": str(batch.path), "bundle_ids": batch.bundle_ids},
                original_exception=e
            )
        logger.info(f"Wrote bundle {meta.id} ({len(body)} bytes)")

    async def _write_csv(self, batch: StagedBatch):
        try:
            out = open(batch.path, "w", newline="", encoding="utf-8")
        except OSError as e:
            raise StagingError(
                f"Failed to create tmp csv file {batch.path}",
                context={"filename": str(batch.path), "bundle_ids": batch.bundle_ids},
                original_exception=e
            )

        with out:
            writer = csv.writer(out, lineterminator="\n")
            for meta in batch.bundles:
                records = decode_records(await self.download(meta), meta.id)
                written = 0
                for index, record in enumerate(records):
                    if not isinstance(record, dict):
                        batch.skipped_count += 1
                        logger.warning(f"Bundle {meta.id} record #{index} is not an object; skipping")
                        continue
                    try:
                        line = self.transformer.transform(record, self.columns)
                    except RecordTransformError as e:
                        batch.skipped_count += 1
                        logger.warning(
                            f"Failed object transform in bundle {meta.id}, skipping record #{index}: {e.message}",
                            extra={"error_context": {**e.context, "bundle_id": meta.id, "record_index": index}}
                        )
                        continue
                    try:
                        writer.writerow(line)
                    except OSError as e:
                        raise StagingError(
                            f"Failed to write to {batch.path}",
                            context={"filename": str(batch.path), "bundle_id": meta.id},
                            original_exception=e
                        )
                    written += 1

                batch.record_count += written
                logger.info(
                    f"Wrote bundle {meta.id} ({written} records, start: {meta.start.isoformat()}, "
                    f"stop: {meta.stop.isoformat()})"
                )

    def cleanup(self, batch: StagedBatch):
        """Remove the local staged file; failures are only logged"""
        try:
            os.remove(batch.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove staged file {batch.path}: {e}")
