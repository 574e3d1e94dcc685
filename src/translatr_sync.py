import asyncio
import logging
import os
import sys
from typing import Any, Dict, Optional

# --- Python Version Check ---
if sys.version_info < (3, 11):
    sys.stderr.write("Error: This script requires Python 3.11 or newer.\n")
    sys.stderr.write(f"You are running Python {sys.version.split()[0]}.\n")
    sys.exit(1)
# --- End Version Check ---

from tqdm import tqdm

from src.app_config import AppConfig, ConfigError, load_app_config
from src.fingerprint_store import FingerprintStore
from src.logging_config import LOGGER_NAME
from src.sync_engine import SyncAborted, SyncEngine, SyncEvent, SyncOutcome, SyncReport
from src.translatr_client import ProgressUpdate, TranslatrClient

logger = logging.getLogger(LOGGER_NAME)

PREFIX = "Translatr:"


class EventLogger:
    """
    Turns engine lifecycle events into log lines and drives the polling
    progress bar.
    """

    def __init__(self, show_progress_bar: bool = True):
        self.show_progress_bar = show_progress_bar
        self._progress_bar: Optional[tqdm] = None

    def __call__(self, event: SyncEvent, payload: Dict[str, Any]) -> None:
        handler = getattr(self, f"_on_{event.value}", None)
        if handler is not None:
            handler(**payload)

    def _on_changes_detected(self, total, new, modified, removed, to_submit, full_resubmission):
        if full_resubmission:
            logger.info("%s No usable cache, submitting all %d string(s)", PREFIX, to_submit)
            return
        if new:
            logger.info("%s Found %d new string(s)", PREFIX, new)
        if modified:
            logger.info("%s Found %d modified string(s)", PREFIX, modified)
        if removed:
            logger.info("%s Found %d removed string(s)", PREFIX, removed)
        if not (new or modified or removed):
            logger.info("%s No changes detected, checking output files...", PREFIX)

    def _on_dry_run_summary(self, total, new, modified, removed, to_submit, languages):
        logger.info("%s Dry run - no changes will be made", PREFIX)
        logger.info("  Total strings: %d", total)
        logger.info("  New strings: %d", new)
        logger.info("  Modified strings: %d", modified)
        logger.info("  Removed strings: %d", removed)
        logger.info("  Strings needing translation: %d", to_submit)
        if languages:
            logger.info("  Target languages: %s", ", ".join(languages))
        else:
            logger.info("  Target languages: None configured or cached.")

    def _on_up_to_date(self, languages):
        logger.info("%s All outputs up-to-date (UP-TO-DATE)", PREFIX)

    def _on_submitting(self, count):
        logger.info("%s Requesting translations for %d string(s)...", PREFIX, count)
        logger.info("%s Large translations may take 5+ minutes. Progress will be shown below.", PREFIX)

    def _on_progress(self, update: ProgressUpdate):
        if not self.show_progress_bar:
            logger.info("%s Processing... %d/%d strings", PREFIX, update.processed, update.total)
            return
        if self._progress_bar is None:
            self._progress_bar = tqdm(total=update.total, desc="Translating", unit="string")
        bar = self._progress_bar
        bar.total = update.total
        bar.n = update.processed
        if update.cached:
            bar.set_postfix(cached=update.cached, translated=update.translated)
        bar.refresh()

    def _close_progress_bar(self):
        if self._progress_bar is not None:
            self._progress_bar.close()
            self._progress_bar = None

    def _on_translations_received(self, languages, meta):
        self._close_progress_bar()
        logger.info("%s Received translations for languages: %s", PREFIX, ", ".join(languages))
        if meta is not None:
            if meta.translated:
                logger.info("%s Translated %d string(s) (%d from cache)", PREFIX, meta.translated, meta.cached)
            else:
                logger.info("%s All %d string(s) retrieved from cache (no AI translation needed)",
                            PREFIX, meta.cached)

    def _on_fallback_to_cache(self, reason):
        self._close_progress_bar()
        logger.error("%s %s", PREFIX, reason)
        logger.warning("%s Attempting to use cached translations as fallback...", PREFIX)

    def _on_language_written(self, language, path):
        logger.info("%s Generated values-%s/strings.xml", PREFIX, language)

    def _on_cache_marked_failed(self):
        logger.info("%s Cache marked as failed - will retry on next run", PREFIX)

    def _on_finished(self, report: SyncReport):
        self._close_progress_bar()
        log_summary(report)


def log_summary(report: SyncReport) -> None:
    """Log the end-of-run summary, after the per-file lines so it does not scroll away."""
    outcome = report.outcome
    if outcome is SyncOutcome.EMPTY_SOURCE:
        logger.warning("No strings found in source file")
    elif outcome is SyncOutcome.NO_TRANSLATIONS:
        logger.warning("%s No translations returned", PREFIX)
        logger.warning("%s Please configure target languages in the Translatr dashboard", PREFIX)
    elif outcome is SyncOutcome.FAILED:
        logger.warning("%s No cached translations available", PREFIX)
        logger.warning("%s Continuing despite translation failure (fail_on_error=false)", PREFIX)
    elif outcome is SyncOutcome.DEGRADED:
        logger.warning("%s Used cached translations for %d language(s)", PREFIX, len(report.languages_written))
    elif outcome is SyncOutcome.PARTIAL:
        logger.info("%s Translation partially completed - see warning below.", PREFIX)
    elif outcome is SyncOutcome.SYNCED:
        logger.info("%s Translation complete!", PREFIX)

    if report.tokens_used:
        logger.info("%s Used %d tokens, %d tokens remaining",
                    PREFIX, report.tokens_used, report.tokens_remaining or 0)
    if report.warning:
        logger.warning("%s %s", PREFIX, report.warning)


def build_client(config: AppConfig) -> TranslatrClient:
    return TranslatrClient(
        server_url=config.server_url,
        api_key=config.api_key or "",
        timeout_seconds=config.timeout_seconds,
        max_retries=config.max_retries,
        poll_max_wait_seconds=config.poll_max_wait_seconds,
        max_requests_per_minute=config.max_requests_per_minute,
    )


async def run_sync(config: AppConfig) -> SyncReport:
    """
    Run one synchronization pass for the configured source file.

    Raises:
        ConfigError: If the source file does not exist.
        SyncAborted: If the service fails and fail_on_error is set.
    """
    if not os.path.exists(config.source_file):
        raise ConfigError(f"Source file not found: {config.source_file}")

    logger.info("%s Parsing source strings from %s", PREFIX, config.source_file)
    store = FingerprintStore(config.cache_dir)
    observer = EventLogger(show_progress_bar=sys.stderr.isatty())

    if config.dry_run:
        engine = SyncEngine(config.source_file, config.output_dir, store, dry_run=True, observer=observer)
        return await engine.run()

    async with build_client(config) as client:
        engine = SyncEngine(
            config.source_file,
            config.output_dir,
            store,
            client=client,
            fail_on_error=config.fail_on_error,
            observer=observer,
        )
        return await engine.run()


async def main() -> int:
    """
    Main function to orchestrate one synchronization run.

    Returns:
        int: The process exit code.
    """
    try:
        config = load_app_config()
        await run_sync(config)
    except ConfigError as config_exc:
        logger.critical("%s %s", PREFIX, config_exc)
        return 1
    except SyncAborted as aborted:
        logger.error("%s %s", PREFIX, aborted.user_message)
        return 1
    return 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
