"""Per-file upload orchestration for the RemoCloud transfer engine.

:class:`TransferOrchestrator` drives one :class:`UploadSession` through::

    pending -> hashing -> checking-duplicates -> {duplicate-found | initiating}
    initiating -> uploading -> finalizing -> completed
    any live state -> error

Each network step runs under its own retry policy (``api`` for REST calls,
``direct`` for the PUT).  An expired signed URL is not retried in place: it
escapes the step and restarts the whole initiate/PUT/complete cycle under
the ``upload`` policy with a freshly issued URL.

:class:`UploadManager` owns the session map, fans state changes out to
subscribers and runs batches of independent orchestrators concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Iterable

from remocloud.constants import UPLOAD_PROGRESS_SHARE
from remocloud.models import (
    ClientConfig,
    DuplicateAction,
    DuplicateInfo,
    FileRef,
    UploadSession,
    UploadStatus,
)
from remocloud.transfer.api import StorageApiClient
from remocloud.transfer.direct import DirectTransferClient, create_transfer_backend
from remocloud.transfer.duplicates import DuplicateDetector
from remocloud.transfer.errors import ErrorKind, TransferError
from remocloud.transfer.fsm import create_fsm
from remocloud.transfer.hasher import ContentHasher
from remocloud.transfer.retry import (
    API_POLICY,
    DIRECT_POLICY,
    UPLOAD_POLICY,
    RetryPolicy,
    SleepFn,
    call_with_retry,
)
from remocloud.transfer.validation import validate_file

logger = logging.getLogger(__name__)

# on_progress(percent, bytes_loaded, bytes_total)
ProgressCallback = Callable[[float, int, int], None]
SessionCallback = Callable[[UploadSession], None]
ErrorCallback = Callable[[UploadSession, TransferError], None]
Listener = Callable[[UploadSession], None]


class TransferOrchestrator:
    """Drives a single upload session end to end.

    Usage::

        orchestrator = TransferOrchestrator(session, api, detector, hasher, direct)
        session = await orchestrator.run()
        if session.status is UploadStatus.DUPLICATE_FOUND:
            session = await orchestrator.continue_upload()

    Args:
        session: The session to drive; mutated only by this instance.
        api: Backend client (initiate / complete / cancel).
        detector: Duplicate lookup.
        hasher: Content digest computation.
        direct: Signed-URL PUT client.
        on_state_change: Receives a snapshot after every status change.
        on_progress: Receives ``(percent, loaded, total)`` while uploading.
        on_complete: Receives the final snapshot on success.
        on_error: Receives ``(snapshot, error)`` exactly once on failure.
        skip_duplicate_check: Go straight to ``initiating``.
        enable_versioning: Forwarded to the completion call.
        sleep: Backoff sleep for every retry loop (injected by tests).
    """

    def __init__(
        self,
        session: UploadSession,
        api: StorageApiClient,
        detector: DuplicateDetector,
        hasher: ContentHasher,
        direct: DirectTransferClient,
        *,
        on_state_change: SessionCallback | None = None,
        on_progress: ProgressCallback | None = None,
        on_complete: SessionCallback | None = None,
        on_error: ErrorCallback | None = None,
        skip_duplicate_check: bool = False,
        enable_versioning: bool = True,
        upload_policy: RetryPolicy = UPLOAD_POLICY,
        api_policy: RetryPolicy = API_POLICY,
        direct_policy: RetryPolicy = DIRECT_POLICY,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._session = session
        self._api = api
        self._detector = detector
        self._hasher = hasher
        self._direct = direct
        self._on_state_change = on_state_change
        self._on_progress = on_progress
        self._on_complete = on_complete
        self._on_error = on_error
        self._skip_duplicate_check = skip_duplicate_check
        self._enable_versioning = enable_versioning
        self._upload_policy = upload_policy
        self._api_policy = api_policy
        self._direct_policy = direct_policy
        self._sleep = sleep

        self._fsm = create_fsm(session.status.value)
        self._task: asyncio.Future[UploadSession] | None = None
        self._cancel_error: TransferError | None = None
        self.restarts = 0

    @property
    def session(self) -> UploadSession:
        return self._session

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def run(self) -> UploadSession:
        """Start the session from ``pending``.

        Returns:
            The session, either ``completed`` or paused at
            ``duplicate-found`` waiting for a caller decision.

        Raises:
            TransferError: The terminal error (the session is in ``error``
                and ``on_error`` has fired), or ``VALIDATION`` when the
                session is already running.
        """
        self._require_idle("run")
        if self._session.status is not UploadStatus.PENDING:
            raise TransferError(
                ErrorKind.VALIDATION,
                f"Session {self._session.id} already started "
                f"(status={self._session.status.value})",
            )
        logger.info(
            "Starting upload %s: %s (%d bytes) -> bucket %s",
            self._session.id,
            self._session.file_ref.name,
            self._session.file_ref.size,
            self._session.bucket_id,
        )
        return await self._drive(self._pipeline())

    async def continue_upload(self) -> UploadSession:
        """Upload anyway after a duplicate was reported."""
        self._require_idle("continue")
        self._require_duplicate_found("continue")
        logger.info("Continuing upload %s despite duplicate", self._session.id)
        return await self._drive(self._transfer())

    def reuse_existing(self, file_id: str | None = None) -> UploadSession:
        """Complete the session by pointing at an existing identical file.

        Args:
            file_id: Which existing file to reuse; defaults to the first one
                the backend reported.
        """
        self._require_idle("reuse")
        self._require_duplicate_found("reuse")
        info = self._session.duplicate_info
        existing = info.existing_files if info is not None else ()
        if file_id is None:
            chosen = existing[0] if existing else None
        else:
            chosen = next((f for f in existing if f.id == file_id), None)
        if chosen is None:
            raise TransferError(
                ErrorKind.NOT_FOUND,
                f"File {file_id} is not among the reported duplicates",
                details={"session_id": self._session.id, "file_id": file_id},
            )
        self._session.result = {"reused": True, "file": asdict(chosen)}
        self._session.progress_percent = 100.0
        self._transition("reuse_existing")
        logger.info("Upload %s reused existing file %s", self._session.id, chosen.id)
        self._notify_complete()
        return self._session

    async def decide(
        self, action: DuplicateAction, file_id: str | None = None
    ) -> UploadSession:
        """Apply the caller's decision for a ``duplicate-found`` session."""
        if action is DuplicateAction.CONTINUE:
            return await self.continue_upload()
        if action is DuplicateAction.REUSE:
            return self.reuse_existing(file_id)
        await self.cancel()
        return self._session

    async def cancel(self) -> None:
        """Abort the session and release its server-side upload.

        Safe to call at any time; a no-op once the session is terminal.
        """
        if self._session.status.is_terminal:
            return
        self._cancel_error = TransferError(
            ErrorKind.CANCELLED,
            "Upload cancelled",
            details={"session_id": self._session.id},
        )
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        await self._abort(self._cancel_error)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _drive(self, coro: Awaitable[UploadSession]) -> UploadSession:
        self._task = asyncio.ensure_future(coro)
        try:
            return await self._task
        except asyncio.CancelledError:
            error = self._cancel_error or TransferError(
                ErrorKind.CANCELLED,
                "Upload interrupted",
                details={"session_id": self._session.id},
            )
            await self._abort(error)
            if self._cancel_error is not None:
                raise error from None
            raise
        except TransferError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            error = TransferError(
                ErrorKind.INTERNAL,
                f"Unexpected failure: {exc}",
                details={"session_id": self._session.id},
            )
            self._fail(error)
            raise error from exc
        finally:
            self._task = None

    async def _pipeline(self) -> UploadSession:
        session = self._session
        if self._dedup_enabled():
            self._transition("start_hashing")
            digest = await self._compute_digest()
            if digest is not None:
                session.client_digest = digest
                self._transition("check_duplicates")
                info = await self._lookup_duplicates(digest)
                if info is not None and info.is_duplicate:
                    session.duplicate_info = info
                    self._transition("found_duplicate")
                    logger.info(
                        "Upload %s paused: %s", session.id, info.recommendation
                    )
                    return session
        return await self._transfer()

    def _dedup_enabled(self) -> bool:
        file_ref = self._session.file_ref
        if self._skip_duplicate_check:
            return False
        if not self._hasher.should_hash(file_ref):
            logger.debug(
                "Skipping dedup for %s: %d bytes exceeds hash ceiling",
                file_ref.name,
                file_ref.size,
            )
            return False
        if not self._hasher.available:
            logger.warning("Skipping dedup for %s: hashing unavailable", file_ref.name)
            return False
        return True

    async def _compute_digest(self) -> str | None:
        try:
            return await self._hasher.hash(self._session.file_ref)
        except TransferError as exc:
            logger.warning(
                "Hashing %s failed, uploading without digest: %s",
                self._session.file_ref.name,
                exc,
            )
            return None

    async def _lookup_duplicates(self, digest: str) -> DuplicateInfo | None:
        session = self._session
        try:
            return await self._detector.check_duplicate(
                session.bucket_id, digest, session.file_ref.name
            )
        except TransferError as exc:
            logger.warning(
                "Duplicate check for %s failed, uploading anyway: %s",
                session.file_ref.name,
                exc,
            )
            return None

    async def _transfer(self) -> UploadSession:
        attempts = 0

        async def _cycle() -> UploadSession:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                self.restarts += 1
            return await self._upload_cycle()

        return await call_with_retry(
            _cycle,
            self._upload_policy,
            context={"session_id": self._session.id},
            sleep=self._sleep,
        )

    async def _upload_cycle(self) -> UploadSession:
        """One initiate -> PUT -> complete pass with a fresh signed URL."""
        session = self._session
        file_ref = session.file_ref
        context = {"session_id": session.id, "filename": file_ref.name}

        self._transition("initiate")
        ticket = await self._step(
            lambda: self._api.initiate_upload(
                session.bucket_id, file_ref, session.client_digest
            ),
            self._api_policy,
            context,
        )
        session.server_upload_id = ticket.upload_id
        session.signed_url = ticket.signed_url
        session.required_headers = dict(ticket.headers_to_include)
        session.url_expires_at = ticket.expires_at

        self._transition("start_upload")
        self._report_bytes(0, file_ref.size)
        transfer = await self._step(
            lambda: self._direct.put(
                ticket.signed_url,
                file_ref,
                session.required_headers,
                self._report_bytes,
            ),
            self._direct_policy,
            context,
        )

        self._transition("finalize")
        result = await self._step(
            lambda: self._api.complete_upload(
                ticket.upload_id,
                etag=transfer.etag,
                actual_size=transfer.bytes_sent,
                client_hash=session.client_digest,
                enable_versioning=self._enable_versioning,
            ),
            self._api_policy,
            context,
        )
        session.result = result
        self._set_progress(100.0, transfer.bytes_sent, transfer.bytes_sent)
        self._transition("complete")
        logger.info(
            "Upload %s completed (%s, %d bytes)",
            session.id,
            file_ref.name,
            transfer.bytes_sent,
        )
        self._notify_complete()
        return session

    async def _step(
        self,
        operation: Callable[[], Awaitable[Any]],
        policy: RetryPolicy,
        context: dict[str, Any],
    ) -> Any:
        self._session.retry_count = 0
        return await call_with_retry(
            operation,
            policy,
            context=context,
            sleep=self._sleep,
            on_retry=self._count_retry,
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _count_retry(self, attempt: int, error: TransferError, delay: float) -> None:
        self._session.retry_count = attempt

    def _report_bytes(self, loaded: int, total: int) -> None:
        share = UPLOAD_PROGRESS_SHARE * loaded / total if total else UPLOAD_PROGRESS_SHARE
        self._set_progress(share, loaded, total)

    def _set_progress(self, percent: float, loaded: int, total: int) -> None:
        percent = min(100.0, percent)
        if percent < self._session.progress_percent:
            return
        self._session.progress_percent = percent
        self._callback(self._on_progress, percent, loaded, total)

    def _transition(self, event: str) -> None:
        previous = self._session.status
        self._fsm.send(event)
        self._session.status = UploadStatus(self._fsm.current_state_value)
        logger.debug(
            "Upload %s: %s -> %s",
            self._session.id,
            previous.value,
            self._session.status.value,
        )
        self._callback(self._on_state_change, self._session.snapshot())

    def _notify_complete(self) -> None:
        self._callback(self._on_complete, self._session.snapshot())

    def _callback(self, callback: Callable[..., None] | None, *args: Any) -> None:
        """Invoke a caller hook; a raising hook is logged and never alters the upload."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(
                "Callback %r raised for upload %s", callback, self._session.id
            )

    def _fail(self, error: TransferError) -> None:
        """Move to ``error`` and fire ``on_error``; no-op when already terminal."""
        if self._session.status.is_terminal:
            return
        self._session.last_error = error
        self._transition("fail")
        logger.error(
            "Upload %s failed: %s: %s",
            self._session.id,
            error.kind.value,
            error.message,
        )
        self._callback(self._on_error, self._session.snapshot(), error)

    async def _abort(self, error: TransferError) -> None:
        if self._session.status.is_terminal:
            return
        server_upload_id = self._session.server_upload_id
        self._fail(error)
        if server_upload_id is None:
            return
        try:
            await self._api.cancel_upload(server_upload_id)
            logger.info("Released server upload %s", server_upload_id)
        except TransferError as exc:
            logger.warning(
                "Could not release server upload %s: %s", server_upload_id, exc
            )

    def _require_idle(self, action: str) -> None:
        if self._task is not None:
            raise TransferError(
                ErrorKind.VALIDATION,
                f"Cannot {action} session {self._session.id}: already running",
                details={"session_id": self._session.id},
            )

    def _require_duplicate_found(self, action: str) -> None:
        if self._session.status is not UploadStatus.DUPLICATE_FOUND:
            raise TransferError(
                ErrorKind.VALIDATION,
                f"Cannot {action} session {self._session.id} in status "
                f"{self._session.status.value}",
                details={"session_id": self._session.id},
            )


class UploadManager:
    """Owns every live upload session of a client.

    Sessions are kept in a ``{session_id: UploadSession}`` map; completed
    sessions are dropped, failed and duplicate-found sessions stay until
    :meth:`remove` is called.  Subscribers receive a snapshot on every state
    or progress change.

    Usage::

        manager = UploadManager(api, config=ClientConfig())
        unsubscribe = manager.subscribe(print)
        session = await manager.upload(FileRef.from_path("a.txt"), "b1")
        results = await manager.upload_batch("b1", refs)
    """

    def __init__(
        self,
        api: StorageApiClient,
        *,
        config: ClientConfig | None = None,
        hasher: ContentHasher | None = None,
        detector: DuplicateDetector | None = None,
        direct: DirectTransferClient | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._config = config or ClientConfig()
        self._api = api
        self._sleep = sleep
        self._hasher = hasher or ContentHasher(
            chunk_size=self._config.chunk_size,
            hash_ceiling=self._config.hash_ceiling,
            quick_hash_limit=self._config.quick_hash_limit,
        )
        self._detector = detector or DuplicateDetector(api, sleep=sleep)
        self._owns_direct = direct is None
        self._direct = direct or DirectTransferClient(
            create_transfer_backend(
                self._config.transfer_mode, chunk_size=self._config.chunk_size
            ),
            timeout=self._config.transfer_timeout,
        )

        self._sessions: dict[str, UploadSession] = {}
        self._orchestrators: dict[str, TransferOrchestrator] = {}
        self._listeners: list[Listener] = []

    async def aclose(self) -> None:
        for session_id in list(self._orchestrators):
            await self.cancel(session_id)
        if self._owns_direct:
            await self._direct.aclose()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, snapshot: UploadSession) -> None:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Upload listener %r raised", listener)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> UploadSession | None:
        session = self._sessions.get(session_id)
        return session.snapshot() if session is not None else None

    def sessions(self) -> list[UploadSession]:
        return [s.snapshot() for s in self._sessions.values()]

    def remove(self, session_id: str) -> bool:
        """Forget a failed or duplicate-found session.

        Returns:
            False when the id is unknown.

        Raises:
            TransferError: ``VALIDATION`` if the session is still live.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if not (
            session.status.is_terminal
            or session.status is UploadStatus.DUPLICATE_FOUND
        ):
            raise TransferError(
                ErrorKind.VALIDATION,
                f"Session {session_id} is still {session.status.value}; cancel it first",
                details={"session_id": session_id},
            )
        self._drop(session_id)
        return True

    def _drop(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._orchestrators.pop(session_id, None)

    def start(
        self,
        file_ref: FileRef,
        bucket_id: str,
        *,
        skip_duplicate_check: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> TransferOrchestrator:
        """Validate *file_ref* and register a new ``pending`` session.

        Raises:
            TransferError: ``VALIDATION`` before any session is created.
        """
        validation = validate_file(
            file_ref,
            max_size=self._config.max_file_size,
            allowed_types=self._config.allowed_types,
        )
        for warning in validation.warnings:
            logger.warning("%s: %s", file_ref.name, warning)
        session = UploadSession(file_ref=file_ref, bucket_id=bucket_id)

        def _progress(percent: float, loaded: int, total: int) -> None:
            if on_progress is not None:
                on_progress(percent, loaded, total)
            self._publish(session.snapshot())

        def _completed(snapshot: UploadSession) -> None:
            self._drop(snapshot.id)

        orchestrator = TransferOrchestrator(
            session,
            self._api,
            self._detector,
            self._hasher,
            self._direct,
            on_state_change=self._publish,
            on_progress=_progress,
            on_complete=_completed,
            skip_duplicate_check=skip_duplicate_check,
            enable_versioning=self._config.enable_versioning,
            sleep=self._sleep,
        )
        self._sessions[session.id] = session
        self._orchestrators[session.id] = orchestrator
        logger.debug("Registered upload session %s for %s", session.id, file_ref.name)
        return orchestrator

    def _orchestrator(self, session_id: str) -> TransferOrchestrator:
        try:
            return self._orchestrators[session_id]
        except KeyError:
            raise TransferError(
                ErrorKind.NOT_FOUND,
                f"Unknown upload session {session_id}",
                details={"session_id": session_id},
            ) from None

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def upload(
        self,
        file_ref: FileRef,
        bucket_id: str,
        *,
        skip_duplicate_check: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> UploadSession:
        """Upload one file; returns the completed or duplicate-found session."""
        orchestrator = self.start(
            file_ref,
            bucket_id,
            skip_duplicate_check=skip_duplicate_check,
            on_progress=on_progress,
        )
        return await orchestrator.run()

    async def continue_upload(self, session_id: str) -> UploadSession:
        return await self._orchestrator(session_id).continue_upload()

    def reuse_existing(self, session_id: str, file_id: str | None = None) -> UploadSession:
        return self._orchestrator(session_id).reuse_existing(file_id)

    async def cancel(self, session_id: str) -> None:
        """Cancel a live session; unknown ids are ignored."""
        orchestrator = self._orchestrators.get(session_id)
        if orchestrator is None:
            return
        await orchestrator.cancel()

    async def upload_batch(
        self,
        bucket_id: str,
        files: Iterable[FileRef],
        *,
        skip_duplicate_check: bool = False,
        max_concurrency: int | None = None,
    ) -> list[UploadSession | TransferError]:
        """Upload independent files concurrently.

        One failure never aborts the batch: each position of the returned
        list holds the session (completed or duplicate-found) or the
        :class:`TransferError` of the corresponding input.
        """
        semaphore = asyncio.Semaphore(max_concurrency or self._config.max_concurrent_uploads)
        refs = list(files)

        async def _one(file_ref: FileRef) -> UploadSession:
            async with semaphore:
                return await self.upload(
                    file_ref, bucket_id, skip_duplicate_check=skip_duplicate_check
                )

        logger.info("Starting batch of %d file(s) -> bucket %s", len(refs), bucket_id)
        raw = await asyncio.gather(*(_one(r) for r in refs), return_exceptions=True)

        results: list[UploadSession | TransferError] = []
        succeeded = failed = duplicates = 0
        for outcome in raw:
            if isinstance(outcome, TransferError):
                failed += 1
                results.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                if outcome.status is UploadStatus.DUPLICATE_FOUND:
                    duplicates += 1
                else:
                    succeeded += 1
                results.append(outcome)

        logger.info(
            "Batch complete: %d succeeded, %d failed, %d duplicate(s) of %d total",
            succeeded,
            failed,
            duplicates,
            len(refs),
        )
        return results
