"""Tests for TransferOrchestrator and UploadManager against the fake backend.

Covers:
  - End-to-end upload of a 50 KB file (state sequence, call counts, progress)
  - Duplicate short-circuit, then continue / reuse / cancel
  - Recovery from an expired signed URL (full-cycle restart)
  - Step-level retries and terminal failures
  - Cancellation of an in-flight PUT
  - Manager session bookkeeping, subscriptions and batches
"""

from __future__ import annotations

import asyncio
import hashlib
import logging

import pytest

from remocloud.models import (
    ClientConfig,
    DuplicateAction,
    FileRef,
    TransferResult,
    UploadSession,
    UploadStatus,
)
from remocloud.transfer.direct import BufferedTransferBackend, DirectTransferClient
from remocloud.transfer.duplicates import DuplicateDetector
from remocloud.transfer.errors import ErrorKind, TransferError
from remocloud.transfer.hasher import ContentHasher
from remocloud.transfer.orchestrator import TransferOrchestrator, UploadManager

from conftest import error_response


class Recorder:
    """Collects every callback an orchestrator fires."""

    def __init__(self) -> None:
        self.states: list[str] = []
        self.progress: list[float] = []
        self.completed: list[UploadSession] = []
        self.errors: list[TransferError] = []

    def kwargs(self) -> dict:
        return {
            "on_state_change": lambda s: self.states.append(s.status.value),
            "on_progress": lambda pct, loaded, total: self.progress.append(pct),
            "on_complete": self.completed.append,
            "on_error": lambda s, err: self.errors.append(err),
        }


def _orchestrator(api, direct, sleeps, file_ref, recorder=None, **kwargs):
    session = UploadSession(file_ref=file_ref, bucket_id="b1")
    return TransferOrchestrator(
        session,
        api,
        DuplicateDetector(api, sleep=sleeps),
        ContentHasher(),
        direct,
        sleep=sleeps,
        **(recorder.kwargs() if recorder else {}),
        **kwargs,
    )


def _register_duplicate(backend, file_ref: FileRef, *files: dict) -> str:
    digest = hashlib.sha256(file_ref.data).hexdigest()
    backend.duplicates[digest] = list(files)
    return digest


# ======================================================================
# Happy path
# ======================================================================


class TestEndToEnd:
    async def test_upload_50kb_file(self, api, direct, sleeps, backend, text_file):
        recorder = Recorder()
        orch = _orchestrator(api, direct, sleeps, text_file, recorder)

        session = await orch.run()

        assert ["pending"] + recorder.states == [
            "pending",
            "hashing",
            "checking-duplicates",
            "initiating",
            "uploading",
            "finalizing",
            "completed",
        ]
        assert backend.count("initiate") == 1
        assert backend.count("put") == 1
        assert backend.count("complete") == 1
        assert session.status is UploadStatus.COMPLETED
        assert session.retry_count == 0
        assert orch.restarts == 0
        assert recorder.errors == []
        assert len(recorder.completed) == 1

        assert recorder.progress[0] == 0
        assert recorder.progress[-1] == 100
        assert recorder.progress == sorted(recorder.progress)
        assert session.progress_percent == 100

    async def test_request_payloads(self, api, direct, sleeps, backend, text_file):
        session = await _orchestrator(api, direct, sleeps, text_file).run()
        digest = hashlib.sha256(text_file.data).hexdigest()

        assert session.client_digest == digest
        initiate = backend.body("initiate")
        assert initiate == {
            "filename": "notes.txt",
            "size": text_file.size,
            "contentType": "text/plain",
            "clientHash": digest,
        }
        complete = backend.body("complete")
        assert complete["etag"] == '"etag-up-1"'
        assert complete["actualSize"] == text_file.size
        assert complete["enableVersioning"] is True

        put = backend.requests["put"][0]
        assert put.headers["x-amz-meta-bucket"] == "b1"
        assert backend.put_bodies == [text_file.data]
        assert session.result["id"] == "file-up-1"

    async def test_skip_duplicate_check(self, api, direct, sleeps, backend, text_file):
        recorder = Recorder()
        await _orchestrator(
            api, direct, sleeps, text_file, recorder, skip_duplicate_check=True
        ).run()
        assert recorder.states[0] == "initiating"
        assert backend.count("check") == 0
        assert "clientHash" not in backend.body("initiate")

    async def test_files_above_hash_ceiling_skip_dedup(
        self, api, direct, sleeps, backend, text_file
    ):
        recorder = Recorder()
        session = UploadSession(file_ref=text_file, bucket_id="b1")
        orch = TransferOrchestrator(
            session,
            api,
            DuplicateDetector(api, sleep=sleeps),
            ContentHasher(hash_ceiling=1000),
            direct,
            sleep=sleeps,
            **recorder.kwargs(),
        )
        await orch.run()
        assert "hashing" not in recorder.states
        assert backend.count("check") == 0
        assert session.client_digest is None

    async def test_run_twice_is_rejected(self, api, direct, sleeps, text_file):
        orch = _orchestrator(api, direct, sleeps, text_file)
        await orch.run()
        with pytest.raises(TransferError) as excinfo:
            await orch.run()
        assert excinfo.value.kind is ErrorKind.VALIDATION

    async def test_concurrent_runs_are_rejected(
        self, api, direct, sleeps, backend, text_file
    ):
        recorder = Recorder()
        orch = _orchestrator(api, direct, sleeps, text_file, recorder)

        first, second = await asyncio.gather(orch.run(), orch.run(), return_exceptions=True)

        assert first.status is UploadStatus.COMPLETED
        assert isinstance(second, TransferError)
        assert second.kind is ErrorKind.VALIDATION
        assert "already running" in second.message
        assert recorder.errors == []
        assert backend.count("initiate") == 1
        assert backend.count("complete") == 1

    async def test_complete_reports_bytes_actually_sent(
        self, api, transport, sleeps, backend
    ):
        async def _short_stream():
            yield b"12345"

        ref = FileRef.from_stream("s.bin", 10, _short_stream, "application/octet-stream")
        direct = DirectTransferClient(BufferedTransferBackend(transport=transport))
        orch = _orchestrator(api, direct, sleeps, ref, skip_duplicate_check=True)

        session = await orch.run()

        assert session.status is UploadStatus.COMPLETED
        assert backend.put_bodies == [b"12345"]
        assert backend.body("complete")["actualSize"] == 5
        await direct.aclose()


# ======================================================================
# Duplicates
# ======================================================================


class TestDuplicates:
    async def test_duplicate_pauses_before_initiate(
        self, api, direct, sleeps, backend, text_file
    ):
        _register_duplicate(backend, text_file, {"id": "f-9", "filename": "notes.txt"})
        recorder = Recorder()
        orch = _orchestrator(api, direct, sleeps, text_file, recorder)

        session = await orch.run()

        assert session.status is UploadStatus.DUPLICATE_FOUND
        assert recorder.states[-1] == "duplicate-found"
        assert backend.count("initiate") == 0
        assert session.duplicate_info.existing_files[0].id == "f-9"
        assert "reuse" in session.duplicate_info.recommendation
        assert recorder.completed == []

    async def test_continue_after_duplicate(self, api, direct, sleeps, backend, text_file):
        _register_duplicate(backend, text_file, {"id": "f-9", "filename": "other.txt"})
        recorder = Recorder()
        orch = _orchestrator(api, direct, sleeps, text_file, recorder)
        await orch.run()
        assert backend.count("initiate") == 0

        session = await orch.decide(DuplicateAction.CONTINUE)

        assert session.status is UploadStatus.COMPLETED
        assert backend.count("initiate") == 1
        assert recorder.states[-4:] == ["initiating", "uploading", "finalizing", "completed"]

    async def test_concurrent_continue_uploads_once(
        self, api, direct, sleeps, backend, text_file
    ):
        _register_duplicate(backend, text_file, {"id": "f-9", "filename": "other.txt"})
        orch = _orchestrator(api, direct, sleeps, text_file)
        await orch.run()

        first, second = await asyncio.gather(
            orch.continue_upload(), orch.continue_upload(), return_exceptions=True
        )

        assert first.status is UploadStatus.COMPLETED
        assert isinstance(second, TransferError)
        assert second.kind is ErrorKind.VALIDATION
        assert backend.count("initiate") == 1
        assert backend.count("put") == 1

    async def test_reuse_existing(self, api, direct, sleeps, backend, text_file):
        _register_duplicate(
            backend,
            text_file,
            {"id": "f-1", "filename": "a.txt"},
            {"id": "f-2", "filename": "notes.txt"},
        )
        recorder = Recorder()
        orch = _orchestrator(api, direct, sleeps, text_file, recorder)
        await orch.run()

        session = orch.reuse_existing("f-2")

        assert session.status is UploadStatus.COMPLETED
        assert session.result["reused"] is True
        assert session.result["file"]["id"] == "f-2"
        assert session.progress_percent == 100
        assert backend.count("initiate") == 0
        assert len(recorder.completed) == 1

    async def test_reuse_unknown_file(self, api, direct, sleeps, backend, text_file):
        _register_duplicate(backend, text_file, {"id": "f-1", "filename": "a.txt"})
        orch = _orchestrator(api, direct, sleeps, text_file)
        await orch.run()
        with pytest.raises(TransferError) as excinfo:
            orch.reuse_existing("nope")
        assert excinfo.value.kind is ErrorKind.NOT_FOUND
        assert orch.session.status is UploadStatus.DUPLICATE_FOUND

    async def test_cancel_duplicate(self, api, direct, sleeps, backend, text_file):
        _register_duplicate(backend, text_file, {"id": "f-1", "filename": "a.txt"})
        recorder = Recorder()
        orch = _orchestrator(api, direct, sleeps, text_file, recorder)
        await orch.run()

        session = await orch.decide(DuplicateAction.CANCEL)

        assert session.status is UploadStatus.ERROR
        assert session.last_error.kind is ErrorKind.CANCELLED
        assert [e.kind for e in recorder.errors] == [ErrorKind.CANCELLED]
        # Nothing was initiated, so there is nothing to release.
        assert backend.count("cancel") == 0

    async def test_continue_requires_duplicate_found(self, api, direct, sleeps, text_file):
        orch = _orchestrator(api, direct, sleeps, text_file)
        with pytest.raises(TransferError) as excinfo:
            await orch.continue_upload()
        assert excinfo.value.kind is ErrorKind.VALIDATION

    async def test_duplicate_check_failure_does_not_block(
        self, api, direct, sleeps, backend, text_file
    ):
        backend.queue("check", error_response(403, "UNAUTHORIZED"))
        recorder = Recorder()
        session = await _orchestrator(api, direct, sleeps, text_file, recorder).run()
        assert session.status is UploadStatus.COMPLETED
        assert "checking-duplicates" in recorder.states
        assert recorder.errors == []


# ======================================================================
# Retries and restarts
# ======================================================================


class TestRecovery:
    async def test_expired_signed_url_restarts_cycle(
        self, api, direct, sleeps, backend, text_file
    ):
        backend.queue("put", error_response(410))
        recorder = Recorder()
        orch = _orchestrator(api, direct, sleeps, text_file, recorder)

        session = await orch.run()

        assert session.status is UploadStatus.COMPLETED
        assert backend.count("initiate") == 2
        assert backend.count("put") == 2
        assert backend.count("complete") == 1
        assert orch.restarts == 1
        assert recorder.errors == []
        assert session.server_upload_id == "up-2"
        assert recorder.progress == sorted(recorder.progress)
        assert len(sleeps.delays) == 1

    async def test_transient_put_failure_retried_in_place(
        self, api, direct, sleeps, backend, text_file
    ):
        backend.queue("put", error_response(503, "STORAGE_ERROR"))
        orch = _orchestrator(api, direct, sleeps, text_file)

        session = await orch.run()

        assert session.status is UploadStatus.COMPLETED
        assert backend.count("initiate") == 1
        assert backend.count("put") == 2
        assert orch.restarts == 0
        assert session.retry_count == 0

    async def test_terminal_error_fails_session_once(
        self, api, direct, sleeps, backend, text_file
    ):
        backend.queue("initiate", error_response(507, "QUOTA_EXCEEDED"))
        recorder = Recorder()
        orch = _orchestrator(api, direct, sleeps, text_file, recorder)

        with pytest.raises(TransferError) as excinfo:
            await orch.run()

        assert excinfo.value.kind is ErrorKind.QUOTA_EXCEEDED
        assert orch.session.status is UploadStatus.ERROR
        assert recorder.states[-1] == "error"
        assert [e.kind for e in recorder.errors] == [ErrorKind.QUOTA_EXCEEDED]
        assert backend.count("put") == 0
        assert sleeps.delays == []

    async def test_exhausted_put_retries(self, api, direct, sleeps, backend, text_file):
        backend.queue("put", *[error_response(503, "STORAGE_ERROR") for _ in range(3)])
        recorder = Recorder()
        orch = _orchestrator(api, direct, sleeps, text_file, recorder)

        with pytest.raises(TransferError) as excinfo:
            await orch.run()

        assert backend.count("put") == 3
        assert excinfo.value.kind is ErrorKind.STORAGE
        assert excinfo.value.retryable is False
        assert orch.session.retry_count == 2
        assert len(recorder.errors) == 1


# ======================================================================
# Cancellation
# ======================================================================


class BlockingDirect:
    """Direct client whose PUT never finishes."""

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def put(self, signed_url, file_ref, headers=None, on_progress=None):
        self.started.set()
        await asyncio.Event().wait()
        return TransferResult(ok=True, status=200, etag=None)

    async def aclose(self) -> None:
        pass


class TestCancellation:
    async def test_cancel_in_flight_put(self, api, sleeps, backend, text_file):
        blocking = BlockingDirect()
        recorder = Recorder()
        orch = _orchestrator(
            api, blocking, sleeps, text_file, recorder, skip_duplicate_check=True
        )
        task = asyncio.create_task(orch.run())
        await blocking.started.wait()

        await orch.cancel()

        with pytest.raises(TransferError) as excinfo:
            await task
        assert excinfo.value.kind is ErrorKind.CANCELLED
        assert orch.session.status is UploadStatus.ERROR
        assert [e.kind for e in recorder.errors] == [ErrorKind.CANCELLED]
        assert backend.count("cancel") == 1
        assert backend.count("complete") == 0

    async def test_cancel_after_completion_is_noop(
        self, api, direct, sleeps, backend, text_file
    ):
        orch = _orchestrator(api, direct, sleeps, text_file)
        await orch.run()
        await orch.cancel()
        assert orch.session.status is UploadStatus.COMPLETED
        assert backend.count("cancel") == 0


# ======================================================================
# UploadManager
# ======================================================================


class TestUploadManager:
    async def test_completed_sessions_are_dropped(self, manager, text_file):
        seen: list[str] = []
        manager.subscribe(lambda s: seen.append(s.status.value))

        session = await manager.upload(text_file, "b1")

        assert session.status is UploadStatus.COMPLETED
        assert manager.get(session.id) is None
        assert manager.sessions() == []
        assert seen[-1] == "completed"
        assert "uploading" in seen

    async def test_unsubscribe(self, manager, text_file):
        seen: list[UploadSession] = []
        unsubscribe = manager.subscribe(seen.append)
        unsubscribe()
        await manager.upload(text_file, "b1")
        assert seen == []

    async def test_listener_errors_are_isolated(self, manager, text_file):
        def _boom(snapshot):
            raise RuntimeError("listener bug")

        manager.subscribe(_boom)
        session = await manager.upload(text_file, "b1")
        assert session.status is UploadStatus.COMPLETED

    async def test_duplicate_session_is_kept_until_decided(
        self, manager, backend, text_file
    ):
        _register_duplicate(backend, text_file, {"id": "f-1", "filename": "notes.txt"})
        session = await manager.upload(text_file, "b1")
        assert manager.get(session.id).status is UploadStatus.DUPLICATE_FOUND

        done = await manager.continue_upload(session.id)
        assert done.status is UploadStatus.COMPLETED
        assert manager.get(session.id) is None

    async def test_reuse_via_manager(self, manager, backend, text_file):
        _register_duplicate(backend, text_file, {"id": "f-1", "filename": "notes.txt"})
        session = await manager.upload(text_file, "b1")
        reused = manager.reuse_existing(session.id)
        assert reused.result["file"]["id"] == "f-1"
        assert manager.get(session.id) is None

    async def test_remove_rules(self, manager, backend, text_file):
        _register_duplicate(backend, text_file, {"id": "f-1", "filename": "notes.txt"})
        session = await manager.upload(text_file, "b1")

        assert manager.remove("missing") is False
        assert manager.remove(session.id) is True
        assert manager.get(session.id) is None

        live = manager.start(FileRef.from_bytes("x.txt", b"x"), "b1")
        with pytest.raises(TransferError) as excinfo:
            manager.remove(live.session.id)
        assert excinfo.value.kind is ErrorKind.VALIDATION

    async def test_unknown_session(self, manager):
        with pytest.raises(TransferError) as excinfo:
            await manager.continue_upload("upload_missing")
        assert excinfo.value.kind is ErrorKind.NOT_FOUND
        await manager.cancel("upload_missing")

    async def test_validation_rejects_before_session(self, api, direct, sleeps, backend):
        mgr = UploadManager(
            api, config=ClientConfig(max_file_size=10), direct=direct, sleep=sleeps
        )
        with pytest.raises(TransferError) as excinfo:
            await mgr.upload(FileRef.from_bytes("big.bin", b"x" * 11), "b1")
        assert excinfo.value.kind is ErrorKind.VALIDATION
        assert mgr.sessions() == []
        assert backend.calls == []
        await mgr.aclose()

    async def test_batch_isolates_failures(self, manager, backend):
        backend.queue("initiate", error_response(403, "UNAUTHORIZED"))
        files = [
            FileRef.from_bytes(f"f{i}.txt", f"content {i}".encode()) for i in range(3)
        ]

        results = await manager.upload_batch(
            "b1", files, skip_duplicate_check=True, max_concurrency=1
        )

        assert len(results) == 3
        assert isinstance(results[0], TransferError)
        assert results[0].kind is ErrorKind.AUTH
        assert all(r.status is UploadStatus.COMPLETED for r in results[1:])
        assert backend.count("complete") == 2

    async def test_batch_reports_duplicates(self, manager, backend):
        dup = FileRef.from_bytes("dup.txt", b"same bytes")
        _register_duplicate(backend, dup, {"id": "f-1", "filename": "dup.txt"})
        fresh = FileRef.from_bytes("new.txt", b"new bytes")

        results = await manager.upload_batch("b1", [dup, fresh])

        assert results[0].status is UploadStatus.DUPLICATE_FOUND
        assert results[1].status is UploadStatus.COMPLETED

    async def test_type_mismatch_is_logged_not_rejected(self, manager, caplog):
        ref = FileRef.from_bytes("photo.png", b"not really a png", content_type="text/plain")

        with caplog.at_level(logging.WARNING, logger="remocloud.transfer.orchestrator"):
            session = await manager.upload(ref, "b1", skip_duplicate_check=True)

        assert session.status is UploadStatus.COMPLETED
        assert any("doesn't match declared type" in r.getMessage() for r in caplog.records)


# ======================================================================
# Caller hooks
# ======================================================================


def _raise(*args):
    raise RuntimeError("hook bug")


class TestCallbackIsolation:
    async def test_raising_state_hook_does_not_fail_upload(
        self, api, direct, sleeps, backend, text_file
    ):
        completed: list[UploadSession] = []
        orch = _orchestrator(
            api,
            direct,
            sleeps,
            text_file,
            on_state_change=_raise,
            on_progress=_raise,
            on_complete=completed.append,
        )

        session = await orch.run()

        assert session.status is UploadStatus.COMPLETED
        assert len(completed) == 1
        assert backend.count("complete") == 1

    async def test_on_error_fires_when_state_hook_raises(
        self, api, direct, sleeps, backend, text_file
    ):
        backend.queue("initiate", error_response(507, "QUOTA_EXCEEDED"))
        errors: list[TransferError] = []
        orch = _orchestrator(
            api,
            direct,
            sleeps,
            text_file,
            skip_duplicate_check=True,
            on_state_change=_raise,
            on_error=lambda s, err: errors.append(err),
        )

        with pytest.raises(TransferError) as excinfo:
            await orch.run()

        assert excinfo.value.kind is ErrorKind.QUOTA_EXCEEDED
        assert [e.kind for e in errors] == [ErrorKind.QUOTA_EXCEEDED]
        assert orch.session.status is UploadStatus.ERROR

    async def test_raising_error_hook_keeps_original_error(
        self, api, direct, sleeps, backend, text_file
    ):
        backend.queue("initiate", error_response(507, "QUOTA_EXCEEDED"))
        orch = _orchestrator(
            api, direct, sleeps, text_file, skip_duplicate_check=True, on_error=_raise
        )

        with pytest.raises(TransferError) as excinfo:
            await orch.run()

        assert excinfo.value.kind is ErrorKind.QUOTA_EXCEEDED
