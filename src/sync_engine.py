"""
Incremental synchronization of a strings.xml file with the Translatr service.

One run diffs the source against the last fingerprint record, submits only
the changed strings, merges the results with what the service already has
cached, rewrites the per-language output files and records the outcome.
Service failures degrade to the cached translations and mark the record as
failed so the next run retries everything.
"""
import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from src.change_detector import ChangeSet, detect_changes
from src.fingerprint_store import (
    FingerprintRecord,
    FingerprintStore,
    compute_file_hash,
    current_millis,
)
from src.logging_config import LOGGER_NAME
from src.merge_writer import languages_in, write_language_outputs
from src.strings_xml import detect_target_languages, language_output_path, parse_strings_xml
from src.translatr_client import (
    ProgressUpdate,
    TranslationMeta,
    TranslationResponse,
    Translations,
    TranslatrClient,
)
from src.translatr_errors import TranslatrApiError

logger = logging.getLogger(LOGGER_NAME)


class SyncState(enum.Enum):
    IDLE = "idle"
    DIFFING = "diffing"
    SKIP_NO_CHANGE = "skip_no_change"
    SUBMITTING = "submitting"
    POLLING = "polling"
    RECONCILING = "reconciling"
    PERSISTING = "persisting"
    DEGRADED = "degraded"
    DONE = "done"


class SyncEvent(enum.Enum):
    CHANGES_DETECTED = "changes_detected"
    UP_TO_DATE = "up_to_date"
    SUBMITTING = "submitting"
    PROGRESS = "progress"
    TRANSLATIONS_RECEIVED = "translations_received"
    FALLBACK_TO_CACHE = "fallback_to_cache"
    LANGUAGE_WRITTEN = "language_written"
    CACHE_MARKED_FAILED = "cache_marked_failed"
    DRY_RUN_SUMMARY = "dry_run_summary"
    FINISHED = "finished"


class SyncOutcome(enum.Enum):
    UP_TO_DATE = "up_to_date"
    SYNCED = "synced"
    PARTIAL = "partial"
    DEGRADED = "degraded"
    FAILED = "failed"
    NO_TRANSLATIONS = "no_translations"
    DRY_RUN = "dry_run"
    EMPTY_SOURCE = "empty_source"


class SyncAborted(Exception):
    """Raised in strict mode when the service fails. Carries the user-facing message."""

    def __init__(self, user_message: str):
        self.user_message = user_message
        super().__init__(user_message)


Observer = Callable[[SyncEvent, Dict[str, Any]], None]


@dataclass
class SyncReport:
    outcome: SyncOutcome
    changes: Optional[ChangeSet] = None
    languages_written: List[str] = field(default_factory=list)
    warning: Optional[str] = None
    meta: Optional[TranslationMeta] = None
    tokens_used: Optional[int] = None
    tokens_remaining: Optional[int] = None
    error: Optional[TranslatrApiError] = None
    states: List[SyncState] = field(default_factory=list)


@dataclass
class _RunContext:
    """State of one run. Nothing here outlives the run."""
    strings: Dict[str, str]
    source_hash: str
    changes: ChangeSet
    prior: Optional[FingerprintRecord]
    states: List[SyncState]


def merge_translations(cached: Translations, fresh: Translations) -> Translations:
    """Overlay fresh translations on cached ones, language by language."""
    merged = {key: dict(by_language) for key, by_language in cached.items()}
    for key, by_language in fresh.items():
        merged.setdefault(key, {}).update(by_language)
    return merged


class SyncEngine:
    """
    Runs one synchronization pass.

    Args:
        source_file (str): The source strings.xml.
        output_dir (str): Resource root receiving ``values-<lang>/strings.xml``.
        store (FingerprintStore): Where the fingerprint record lives.
        client (Optional[TranslatrClient]): Service client; only a dry run may omit it.
        fail_on_error (bool): Abort with SyncAborted instead of degrading.
        dry_run (bool): Report what would be submitted and stop.
        observer (Optional[Observer]): Receives lifecycle events.
    """

    def __init__(
            self,
            source_file: str,
            output_dir: str,
            store: FingerprintStore,
            client: Optional[TranslatrClient] = None,
            fail_on_error: bool = False,
            dry_run: bool = False,
            observer: Optional[Observer] = None,
            clock_millis: Callable[[], int] = current_millis
    ):
        if client is None and not dry_run:
            raise ValueError("A TranslatrClient is required unless running dry.")
        self.source_file = source_file
        self.output_dir = output_dir
        self.store = store
        self.client = client
        self.fail_on_error = fail_on_error
        self.dry_run = dry_run
        self._observer = observer
        self._clock_millis = clock_millis

    def _emit(self, event: SyncEvent, **payload) -> None:
        if self._observer is not None:
            self._observer(event, payload)

    @staticmethod
    def _enter(ctx: _RunContext, state: SyncState) -> None:
        ctx.states.append(state)
        logger.debug("Sync state -> %s", state.value)

    def _finish(self, ctx: Optional[_RunContext], report: SyncReport) -> SyncReport:
        if ctx is not None:
            self._enter(ctx, SyncState.DONE)
            report.states = list(ctx.states)
        self._emit(SyncEvent.FINISHED, report=report)
        return report

    async def run(self) -> SyncReport:
        """
        Run one synchronization pass.

        Returns:
            SyncReport: What happened.

        Raises:
            FileNotFoundError: If the source file does not exist.
            SyncAborted: In strict mode, when the service fails.
        """
        strings = parse_strings_xml(self.source_file)
        if not strings:
            return self._finish(None, SyncReport(SyncOutcome.EMPTY_SOURCE))

        prior = self.store.load()
        ctx = _RunContext(
            strings=strings,
            source_hash=compute_file_hash(self.source_file),
            changes=detect_changes(strings, prior),
            prior=prior,
            states=[SyncState.IDLE],
        )
        self._enter(ctx, SyncState.DIFFING)
        changes = ctx.changes
        self._emit(
            SyncEvent.CHANGES_DETECTED,
            total=len(strings),
            new=len(changes.new_keys),
            modified=len(changes.modified_keys),
            removed=len(changes.removed_keys),
            to_submit=len(changes.submission),
            full_resubmission=changes.full_resubmission,
        )

        if self.dry_run:
            return self._report_dry_run(ctx)

        if changes.is_empty and not (prior is not None and prior.failed):
            return await self._skip_no_change(ctx)

        if changes.submission:
            return await self._submit_and_reconcile(ctx)

        # Only removals: everything still wanted comes from the service cache.
        return await self._reconcile_from_cache(ctx)

    def _report_dry_run(self, ctx: _RunContext) -> SyncReport:
        if ctx.prior is not None and ctx.prior.languages:
            languages = sorted(ctx.prior.languages)
        else:
            languages = detect_target_languages(self.output_dir)
        self._emit(
            SyncEvent.DRY_RUN_SUMMARY,
            total=len(ctx.strings),
            new=len(ctx.changes.new_keys),
            modified=len(ctx.changes.modified_keys),
            removed=len(ctx.changes.removed_keys),
            to_submit=len(ctx.changes.submission),
            languages=languages,
        )
        return self._finish(ctx, SyncReport(SyncOutcome.DRY_RUN, changes=ctx.changes))

    async def _skip_no_change(self, ctx: _RunContext) -> SyncReport:
        """
        Nothing changed locally. Check whether the service knows languages
        that have no output file yet, and write them if so.
        """
        self._enter(ctx, SyncState.SKIP_NO_CHANGE)
        try:
            cached = await self.client.fetch_cached()
        except TranslatrApiError as exc:
            logger.debug("Could not check server languages: %s", exc.debug_message or exc.user_message)
            self._enter(ctx, SyncState.DEGRADED)
            return await self._reconcile_from_cache(ctx)

        server_languages = languages_in(cached.translations)
        missing = sorted(
            language for language in server_languages
            if not os.path.exists(language_output_path(self.output_dir, language))
        )
        if not missing:
            if server_languages:
                self._save_record(ctx, server_languages, failed=False)
            self._emit(SyncEvent.UP_TO_DATE, languages=sorted(server_languages))
            return self._finish(ctx, SyncReport(SyncOutcome.UP_TO_DATE, changes=ctx.changes))

        logger.debug("Languages without output files: %s", ", ".join(missing))
        return self._reconcile_and_persist(
            ctx, cached.translations, server_languages, failed=False,
            report=SyncReport(SyncOutcome.SYNCED, changes=ctx.changes, meta=cached.meta),
        )

    async def _submit_and_reconcile(self, ctx: _RunContext) -> SyncReport:
        self._enter(ctx, SyncState.SUBMITTING)
        self._emit(SyncEvent.SUBMITTING, count=len(ctx.changes.submission))
        try:
            job_id = await self.client.submit(ctx.changes.submission)
            self._enter(ctx, SyncState.POLLING)
            status = await self.client.poll(job_id, on_progress=self._on_progress)
        except TranslatrApiError as exc:
            return await self._degrade(ctx, exc)

        response = TranslationResponse.from_job(status)
        report = SyncReport(
            SyncOutcome.SYNCED,
            changes=ctx.changes,
            warning=response.warning,
            meta=response.meta,
            tokens_used=response.tokens_used,
            tokens_remaining=response.tokens_remaining,
        )

        # Unchanged strings are not in the job result, so the cache fills them in.
        cached_translations: Translations = {}
        cache_incomplete = False
        try:
            cached_translations = (await self.client.fetch_cached()).translations
        except TranslatrApiError as exc:
            logger.debug("Fetching cached translations failed: %s", exc.debug_message or exc.user_message)
            cache_incomplete = True
            report.error = exc

        if not response.translations:
            if response.warning is not None and cached_translations:
                self._emit(SyncEvent.FALLBACK_TO_CACHE, reason=response.warning)
                report.outcome = SyncOutcome.DEGRADED
                return self._reconcile_and_persist(
                    ctx, cached_translations, languages_in(cached_translations), failed=True, report=report
                )
            report.outcome = SyncOutcome.NO_TRANSLATIONS
            return self._finish(ctx, report)

        languages = languages_in(response.translations) | languages_in(cached_translations)
        if not languages:
            # Keys without any language leave nothing to write or record.
            report.outcome = SyncOutcome.NO_TRANSLATIONS
            return self._finish(ctx, report)
        self._emit(SyncEvent.TRANSLATIONS_RECEIVED, languages=sorted(languages), meta=response.meta)

        # A warning means the job stopped early; the next run has to retry.
        failed = response.warning is not None or cache_incomplete
        if failed:
            report.outcome = SyncOutcome.PARTIAL
        return self._reconcile_and_persist(
            ctx, merge_translations(cached_translations, response.translations), languages,
            failed=failed, report=report,
        )

    async def _reconcile_from_cache(self, ctx: _RunContext) -> SyncReport:
        try:
            cached = await self.client.fetch_cached()
        except TranslatrApiError as exc:
            if ctx.states[-1] is not SyncState.DEGRADED:
                self._enter(ctx, SyncState.DEGRADED)
            return self._fail_without_fallback(ctx, exc)

        if not cached.translations:
            return self._finish(ctx, SyncReport(SyncOutcome.NO_TRANSLATIONS, changes=ctx.changes))

        return self._reconcile_and_persist(
            ctx, cached.translations, languages_in(cached.translations), failed=False,
            report=SyncReport(SyncOutcome.SYNCED, changes=ctx.changes, meta=cached.meta),
        )

    async def _degrade(self, ctx: _RunContext, exc: TranslatrApiError) -> SyncReport:
        """Fall back to the service's cached translations after a job failure."""
        self._enter(ctx, SyncState.DEGRADED)
        if exc.debug_message:
            logger.debug("Debug details: %s", exc.debug_message)
        if self.fail_on_error:
            raise SyncAborted(exc.user_message) from exc

        self._emit(SyncEvent.FALLBACK_TO_CACHE, reason=exc.user_message)
        try:
            cached = await self.client.fetch_cached()
        except TranslatrApiError as cache_exc:
            logger.debug("Fallback fetch failed: %s", cache_exc.debug_message or cache_exc.user_message)
            return self._fail_without_fallback(ctx, exc)

        if not cached.translations:
            return self._fail_without_fallback(ctx, exc)

        return self._reconcile_and_persist(
            ctx, cached.translations, languages_in(cached.translations), failed=True,
            report=SyncReport(SyncOutcome.DEGRADED, changes=ctx.changes, meta=cached.meta, error=exc),
        )

    def _fail_without_fallback(self, ctx: _RunContext, exc: TranslatrApiError) -> SyncReport:
        """No usable translations: remember the failure and leave outputs alone."""
        # The cause is not surfaced to the build, so keep it in the debug log.
        logger.debug("Suppressed translation failure (%s): %s",
                     type(exc).__name__, exc.debug_message or exc.user_message)
        if self.fail_on_error:
            raise SyncAborted(exc.user_message) from exc

        self._enter(ctx, SyncState.PERSISTING)
        self._save_record(ctx, set(), failed=True)
        return self._finish(ctx, SyncReport(SyncOutcome.FAILED, changes=ctx.changes, error=exc))

    def _reconcile_and_persist(
            self,
            ctx: _RunContext,
            translations: Translations,
            languages: Set[str],
            failed: bool,
            report: SyncReport
    ) -> SyncReport:
        self._enter(ctx, SyncState.RECONCILING)
        written = write_language_outputs(
            self.output_dir,
            translations,
            languages,
            list(ctx.strings),
            ctx.changes.removed_keys,
        )
        for language, path in written.items():
            self._emit(SyncEvent.LANGUAGE_WRITTEN, language=language, path=path)
        report.languages_written = sorted(written)

        self._enter(ctx, SyncState.PERSISTING)
        self._save_record(ctx, languages, failed=failed)
        return self._finish(ctx, report)

    def _save_record(self, ctx: _RunContext, languages: Set[str], failed: bool) -> None:
        self.store.save(FingerprintRecord(
            source_hash=ctx.source_hash,
            timestamp=self._clock_millis(),
            languages=set(languages),
            string_hashes=dict(ctx.changes.current_hashes),
            failed=failed,
        ))
        if failed:
            self._emit(SyncEvent.CACHE_MARKED_FAILED)

    def _on_progress(self, update: ProgressUpdate) -> None:
        self._emit(SyncEvent.PROGRESS, update=update)
