"""
price_harvester.py: historical RedStone price attestation harvester

Overview
--------
Rebuilds a day-granular series of signed oracle price packages for a fixed,
ordered set of RedStone nodes and stores it in a resumable JSON cache
(`historical_prices.json` by default).

Workflow (per batch)
--------------------
1) Load the cache; a corrupt file aborts before any network activity.
2) Resume one step past the greatest cached timestamp.
3) For every timestamp of the batch, concurrently:
   resolve the nearest block -> bucket its timestamp to the index grid ->
   query the index once per oracle -> download and decode each package.
4) Barrier, then put every entry into the cache and flush it atomically.
5) Repeat until the batch covering `end_ts` has been flushed.

Failure handling
----------------
Resolution, index and decode failures are logged and leave that oracle's
slot empty (`[]`); they never abort a batch. Recovery is "rerun the
harvester": cached timestamps are never fetched again, so reruns are cheap
and never rewrite finished entries.

Output schema
-------------
`{"<unix ts>": [[{"symbol": "AVAX", "value": 21.37}, ...], <node 2>, <node 3>]}`
"""

import argparse
import datetime
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from loguru import logger
from tqdm import tqdm

from attestation_harvester.core import planner
from attestation_harvester.core.blocks import BlockResolver
from attestation_harvester.core.cache import ResumableCache
from attestation_harvester.core.config import HarvestConfig, load_config
from attestation_harvester.core.decoder import PackageDecoder
from attestation_harvester.core.errors import (
    CacheCorruptionError,
    ConfigError,
    DecodeError,
    ResolutionError,
)
from attestation_harvester.core.export import export_cache
from attestation_harvester.core.index import AttestationFetcher
from attestation_harvester.core.models import CacheEntry, HarvestState, HarvestSummary, MissingOraclePolicy
from attestation_harvester.core.utils import format_ts

EXIT_COMPLETE = 0
EXIT_INCOMPLETE = 1
EXIT_FAILED = 2
EXIT_INTERRUPTED = 130


class Harvester:
    def __init__(
        self,
        config: HarvestConfig,
        cache: ResumableCache,
        resolver: BlockResolver,
        fetcher: AttestationFetcher,
        decoder: PackageDecoder,
        clock: Callable[[], float] = time.monotonic,
        show_progress: bool = False,
    ):
        self.config = config
        self.cache = cache
        self.resolver = resolver
        self.fetcher = fetcher
        self.decoder = decoder
        self.clock = clock
        self.show_progress = show_progress
        self.state = HarvestState.IDLE

    @classmethod
    def from_config(cls, config: HarvestConfig, show_progress: bool = False) -> "Harvester":
        return cls(
            config,
            ResumableCache(config.cache_path),
            BlockResolver.from_config(config),
            AttestationFetcher.from_config(config),
            PackageDecoder.from_config(config),
            show_progress=show_progress,
        )

    # ---------------- Per timestamp ----------------
    def harvest_timestamp(self, timestamp: int) -> CacheEntry:
        """Resolve, fetch and decode one timestamp; failed oracles leave `[]`."""
        oracles = self.config.oracles
        slots: CacheEntry = [[] for _ in oracles]
        try:
            resolved = self.resolver.resolve(timestamp)
        except ResolutionError as exc:
            logger.warning(f"Skipping {timestamp}: {exc}")
            return slots

        records = self.fetcher.fetch_all(resolved.bucketed_timestamp, oracles)
        for i, record in enumerate(records):
            if record is None:
                continue
            try:
                package = self.decoder.decode(record)
            except DecodeError as exc:
                logger.warning(f"Decode failed for {record.oracle.name} @ {timestamp} ({record.payload_locator}): {exc}")
                continue
            slots[i] = [point.to_json() for point in package.data_points]
        return slots

    # ---------------- Planning ----------------
    def plan(self, cached: Sequence[int]) -> Iterator[List[int]]:
        cfg = self.config
        if cfg.missing_oracle_policy is MissingOraclePolicy.REQUIRE_COMPLETE:
            return planner.missing_timestamps(cfg.start_ts, cfg.end_ts, cfg.step_seconds, set(cached), cfg.batch_size)
        start = planner.resume_point(cached, cfg.start_ts, cfg.step_seconds)
        if start > cfg.end_ts:
            return iter(())
        return planner.generate(start, cfg.end_ts, cfg.step_seconds, cfg.batch_size)

    def fetch_batch(self, batch: Sequence[int]) -> List[Tuple[int, CacheEntry]]:
        with ThreadPoolExecutor(max_workers=min(self.config.batch_size, len(batch))) as ex:
            futures = [(ts, ex.submit(self.harvest_timestamp, ts)) for ts in batch]
            # barrier: every task of the batch completes before anything is merged
            return [(ts, fut.result()) for ts, fut in futures]

    # ---------------- Driver ----------------
    def run(self) -> HarvestSummary:
        cfg = self.config
        summary = HarvestSummary(requested=len(cfg.requested_timestamps()))
        start_time = self.clock()

        self.state = HarvestState.LOADING_CACHE
        try:
            cached = self.cache.load(expected_slots=len(cfg.oracles))
        except CacheCorruptionError:
            self.state = HarvestState.FAILED
            raise

        self.state = HarvestState.PLANNING
        batches = self.plan(list(cached))
        pending = summary.requested - sum(1 for ts in cfg.requested_timestamps() if ts in self.cache)
        pbar = tqdm(total=pending, desc="Timestamps", dynamic_ncols=True, leave=False, disable=not self.show_progress)
        try:
            for batch in batches:
                self.state = HarvestState.FETCHING_BATCH
                results = self.fetch_batch(batch)

                self.state = HarvestState.FLUSHING
                for ts, entry in results:
                    filled = sum(1 for slot in entry if slot)
                    summary.filled_slots += filled
                    summary.empty_slots += len(entry) - filled
                    if filled < len(entry) and cfg.missing_oracle_policy is MissingOraclePolicy.REQUIRE_COMPLETE:
                        summary.skipped_incomplete.append(ts)
                        continue
                    self.cache.put(ts, entry)
                    summary.written += 1
                self.cache.flush()
                summary.batches += 1
                summary.flushes += 1
                summary.last_flushed = batch[-1]
                pbar.update(len(batch))

                elapsed = datetime.timedelta(seconds=int(self.clock() - start_time))
                logger.info(f"✓ Batch up to {batch[-1]} ({format_ts(batch[-1])}) flushed | {len(self.cache)} cached | elapsed {elapsed}")
                self.state = HarvestState.PLANNING
        finally:
            pbar.close()

        self.state = HarvestState.DONE
        summary.covered = sum(1 for ts in cfg.requested_timestamps() if ts in self.cache)
        summary.elapsed = self.clock() - start_time
        return summary


def run(config: HarvestConfig, show_progress: bool = False) -> HarvestSummary:
    return Harvester.from_config(config, show_progress=show_progress).run()


# ---------------- CLI ----------------
def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="attestation-harvest", description="Harvest historical RedStone price packages.")
    parser.add_argument("--config", default=None, help="YAML config (default: $HARVEST_CONFIG_PATH)")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command")

    p_run = sub.add_parser("run", help="Harvest the configured window into the cache")
    p_run.add_argument("--start", default=None, help="Override start_ts (unix or ISO8601)")
    p_run.add_argument("--end", default=None, help="Override end_ts (unix or ISO8601)")
    p_run.add_argument("--cache", default=None, help="Override cache_path")
    p_run.add_argument("--batch-size", type=int, default=None)
    p_run.add_argument("--no-progress", action="store_true")

    p_export = sub.add_parser("export", help="Flatten the cache into a pickle or CSV table")
    p_export.add_argument("--cache", default=None, help="Override cache_path")
    p_export.add_argument("--out", required=True, help="Output path (.pkl or .csv)")
    return parser


def print_summary(config: HarvestConfig, summary: HarvestSummary) -> None:
    print(f"\n{'='*60}")
    print("✅ COMPLETED!" if summary.complete else "⚠️  INCOMPLETE")
    print(f"Time range: {format_ts(config.start_ts)} to {format_ts(config.end_ts)}")
    print(f"Timestamps covered: {summary.covered:,} / {summary.requested:,} (new: {summary.written:,})")
    print(f"Oracle slots: {summary.filled_slots:,} filled, {summary.empty_slots:,} empty")
    if summary.skipped_incomplete:
        print(f"Left for the next run (incomplete): {len(summary.skipped_incomplete):,}")
    print(f"Cache file: {config.cache_path}")
    print(f"Total time: {str(datetime.timedelta(seconds=int(summary.elapsed)))}")
    print(f"{'='*60}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())

    overrides = {"cache_path": args.cache}
    if args.command in (None, "run"):
        overrides.update({
            "start_ts": getattr(args, "start", None),
            "end_ts": getattr(args, "end", None),
            "batch_size": getattr(args, "batch_size", None),
        })
    try:
        config = load_config(args.config, overrides)
    except ConfigError as exc:
        logger.error(f"Invalid configuration: {exc}")
        return EXIT_FAILED

    if args.command == "export":
        try:
            out, rows = export_cache(config.cache_path, args.out, config.oracles)
        except (CacheCorruptionError, ValueError) as exc:
            logger.error(str(exc))
            return EXIT_FAILED
        print(f"  ✓ Exported {rows:,} rows → {out}")
        return EXIT_COMPLETE

    print(f"Starting attestation harvest on {config.chain.name.lower()} ({config.service_id})")
    print(f"Date range: {format_ts(config.start_ts)} to {format_ts(config.end_ts)}")
    print(f"Settings: STEP={config.step_seconds}s, BATCH={config.batch_size}, BUCKET={config.bucket_seconds}s, "
          f"ORACLES={[o.name for o in config.oracles]}")
    try:
        summary = run(config, show_progress=not getattr(args, "no_progress", False))
    except CacheCorruptionError as exc:
        logger.error(f"Aborting, cache left untouched: {exc}")
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning("Interrupted; flushed batches are kept, rerun to resume.")
        return EXIT_INTERRUPTED

    print_summary(config, summary)
    return EXIT_COMPLETE if summary.complete else EXIT_INCOMPLETE


if __name__ == "__main__":
    sys.exit(main())
