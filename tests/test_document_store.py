"""Tests for the document store, its HTTP source and autosave."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from tokensmith.ai.errors import DocumentLoadError, DocumentNotLoadedError, DocumentValidationError, SaveError
from tokensmith.core.paths import set_path
from tokensmith.documents.store import DocumentStore, HttpDocumentSource
from tokensmith.services.events import (
    DocumentLoaded,
    DocumentModified,
    DocumentReverted,
    DocumentSaved,
    DocumentSaveFailed,
)


def _recolor(value: str):
    def updater(document: dict) -> None:
        set_path(document, "tokens.colors.primary", value, copy=False)

    return updater


class TestLoad:
    @pytest.mark.asyncio
    async def test_load_installs_working_copy_and_baseline(self, store, sample_design, bus, recorder_factory) -> None:
        recorder = recorder_factory(bus, DocumentLoaded)

        loaded = await store.load()

        assert loaded == sample_design
        assert store.loaded
        assert store.version == 1
        assert store.is_dirty() is False
        assert store.baseline is not None and store.baseline.matches(sample_design)
        assert [event.version for event in recorder.events] == [1]

    def test_operations_require_a_loaded_document(self, store) -> None:
        with pytest.raises(DocumentNotLoadedError):
            store.current_document()
        with pytest.raises(DocumentNotLoadedError):
            store.mutate(_recolor("#000"))

    @pytest.mark.asyncio
    async def test_failed_load_leaves_state_untouched(self, store, source) -> None:
        await store.load()
        store.mutate(_recolor("#123456"))
        version, baseline = store.version, store.baseline
        source.push(DocumentLoadError(message="offline"))

        with pytest.raises(DocumentLoadError):
            await store.load()

        assert store.version == version
        assert store.baseline is baseline
        assert store.current_document()["tokens"]["colors"]["primary"] == "#123456"

    @pytest.mark.asyncio
    async def test_invalid_document_is_rejected(self, store, source) -> None:
        source.push({"unrelated": True})
        await store.load()

        with pytest.raises(DocumentValidationError):
            await store.load()
        assert store.version == 1


class TestMutate:
    @pytest.mark.asyncio
    async def test_mutation_marks_dirty_and_publishes(self, store, bus, recorder_factory) -> None:
        await store.load()
        recorder = recorder_factory(bus, DocumentModified)

        version = store.mutate(_recolor("#ff0000"), origin="inspector")

        assert version == 2
        assert store.is_dirty() is True
        assert recorder.events[-1].dirty is True
        assert recorder.events[-1].origin == "inspector"

    @pytest.mark.asyncio
    async def test_reverting_an_edit_by_hand_is_clean(self, store) -> None:
        await store.load()
        store.mutate(_recolor("#ff0000"))
        store.mutate(_recolor("#1e3a8a"))
        assert store.is_dirty() is False

    @pytest.mark.asyncio
    async def test_updater_may_return_a_replacement(self, store, sample_design) -> None:
        await store.load()
        replacement = dict(sample_design, extra={"note": "hi"})

        store.mutate(lambda _current: replacement)
        replacement["extra"]["note"] = "changed later"

        assert store.current_document()["extra"] == {"note": "hi"}

    @pytest.mark.asyncio
    async def test_failing_updater_changes_nothing(self, store, sample_design) -> None:
        await store.load()

        def broken(document: dict) -> None:
            document["tokens"] = None
            raise RuntimeError("halfway")

        with pytest.raises(RuntimeError):
            store.mutate(broken)

        assert store.version == 1
        assert store.current_document() == sample_design

    @pytest.mark.asyncio
    async def test_non_mapping_result_is_rejected(self, store) -> None:
        await store.load()
        with pytest.raises(TypeError):
            store.mutate(lambda _current: ["not", "a", "document"])
        assert store.version == 1

    @pytest.mark.asyncio
    async def test_readers_get_copies(self, store) -> None:
        await store.load()
        snapshot = store.current_document()
        snapshot["tokens"]["colors"]["primary"] = "#000000"
        assert store.is_dirty() is False

    @pytest.mark.asyncio
    async def test_revert_to_baseline(self, store, sample_design, bus, recorder_factory) -> None:
        await store.load()
        recorder = recorder_factory(bus, DocumentReverted)
        store.mutate(_recolor("#ff0000"))

        restored = store.revert_to_baseline()

        assert restored == sample_design
        assert store.is_dirty() is False
        assert len(recorder.events) == 1


class TestSave:
    @pytest.mark.asyncio
    async def test_save_moves_baseline(self, store, persistence, bus, recorder_factory) -> None:
        await store.load()
        recorder = recorder_factory(bus, DocumentSaved)
        store.mutate(_recolor("#ff0000"))

        receipt = await store.save()

        assert receipt.backup_file == "design_backup_1.json"
        assert store.is_dirty() is False
        assert persistence.last_document["tokens"]["colors"]["primary"] == "#ff0000"
        assert store.last_receipt is receipt
        assert store.last_saved_at is not None
        assert recorder.events[0].backup_file == "design_backup_1.json"
        assert recorder.events[0].autosave is False

    @pytest.mark.asyncio
    async def test_failed_save_keeps_baseline(self, store, persistence, bus, recorder_factory) -> None:
        await store.load()
        recorder = recorder_factory(bus, DocumentSaveFailed)
        baseline = store.baseline
        store.mutate(_recolor("#ff0000"))
        persistence.fail_next()

        with pytest.raises(SaveError):
            await store.save()

        assert store.baseline is baseline
        assert store.is_dirty() is True
        assert store.current_document()["tokens"]["colors"]["primary"] == "#ff0000"
        assert len(recorder.events) == 1

    @pytest.mark.asyncio
    async def test_unexpected_adapter_errors_are_wrapped(self, store, persistence) -> None:
        await store.load()
        persistence.fail_next(RuntimeError("adapter bug"))

        with pytest.raises(SaveError) as excinfo:
            await store.save()

        assert "adapter bug" in excinfo.value.message
        assert isinstance(excinfo.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_concurrent_saves_are_serialized(self, store, persistence) -> None:
        persistence.delay = 0.01
        await store.load()
        store.mutate(_recolor("#ff0000"))

        first, second = await asyncio.gather(store.save(), store.save())

        assert first.backup_file == "design_backup_1.json"
        assert second.backup_file == "design_backup_2.json"
        assert len(persistence.saved) == 2


class TestAutosave:
    @pytest.mark.asyncio
    async def test_rapid_edits_coalesce_into_one_save(self, store, persistence) -> None:
        await store.load()
        store.set_autosave(True)

        for color in ("#100000", "#200000", "#300000"):
            store.mutate(_recolor(color))
            await asyncio.sleep(0.01)

        await asyncio.sleep(0.15)
        await store.flush_autosave()

        assert len(persistence.saved) == 1
        assert persistence.last_document["tokens"]["colors"]["primary"] == "#300000"
        assert store.is_dirty() is False

    @pytest.mark.asyncio
    async def test_autosave_disabled_never_saves(self, store, persistence) -> None:
        await store.load()
        store.mutate(_recolor("#ff0000"))

        await asyncio.sleep(0.1)

        assert persistence.saved == []
        assert store.autosave_pending is False

    @pytest.mark.asyncio
    async def test_enabling_autosave_does_not_save_by_itself(self, store, persistence) -> None:
        await store.load()
        store.mutate(_recolor("#ff0000"))
        store.set_autosave(True)

        await asyncio.sleep(0.1)

        assert persistence.saved == []

    @pytest.mark.asyncio
    async def test_blocked_autosave_resumes_on_release(self, store, persistence) -> None:
        await store.load()
        store.set_autosave(True)

        with store.autosave_blocked():
            store.mutate(_recolor("#ff0000"))
            await asyncio.sleep(0.1)
            assert persistence.saved == []
            assert store.autosave_pending is False

        assert store.autosave_pending is True
        await asyncio.sleep(0.1)
        await store.flush_autosave()
        assert len(persistence.saved) == 1

    @pytest.mark.asyncio
    async def test_autosave_failure_is_recorded(self, store, persistence) -> None:
        await store.load()
        store.set_autosave(True)
        persistence.fail_next()

        store.mutate(_recolor("#ff0000"))
        await asyncio.sleep(0.1)
        await store.flush_autosave()

        assert isinstance(store.last_autosave_error, SaveError)
        assert store.is_dirty() is True

    @pytest.mark.asyncio
    async def test_explicit_save_cancels_pending_autosave(self, store, persistence) -> None:
        await store.load()
        store.set_autosave(True)
        store.mutate(_recolor("#ff0000"))
        assert store.autosave_pending is True

        await store.save()
        await asyncio.sleep(0.1)
        await store.flush_autosave()

        assert len(persistence.saved) == 1

    def test_negative_delay_rejected(self, source, persistence) -> None:
        with pytest.raises(ValueError):
            DocumentStore(source, persistence, autosave_delay=-1)


class TestHttpDocumentSource:
    @pytest.mark.asyncio
    async def test_fetch_unwraps_envelope(self, mock_client_factory, sample_design) -> None:
        client = mock_client_factory(lambda request: httpx.Response(200, json={"designV2": sample_design}))
        source = HttpDocumentSource("http://design.test/api/design-v2", client=client)

        assert await source.fetch() == sample_design
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_status_is_not_retried(self, mock_client_factory) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(404)

        client = mock_client_factory(handler)
        source = HttpDocumentSource("http://design.test/doc", client=client, retry_min_seconds=0.001)

        with pytest.raises(DocumentLoadError) as excinfo:
            await source.fetch()

        assert excinfo.value.status_code == 404
        assert excinfo.value.details["reason"] == "status"
        assert len(calls) == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, mock_client_factory) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            raise httpx.ConnectError("refused", request=request)

        client = mock_client_factory(handler)
        source = HttpDocumentSource(
            "http://design.test/doc",
            client=client,
            max_retries=3,
            retry_min_seconds=0.001,
            retry_max_seconds=0.002,
        )

        with pytest.raises(DocumentLoadError) as excinfo:
            await source.fetch()

        assert excinfo.value.details["reason"] == "transport"
        assert len(calls) == 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_retry_recovers_from_transient_errors(self, mock_client_factory, sample_design) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, content=json.dumps(sample_design).encode("utf-8"))

        client = mock_client_factory(handler)
        source = HttpDocumentSource("http://design.test/doc", client=client, retry_min_seconds=0.001)

        assert await source.fetch() == sample_design
        assert len(attempts) == 2
        await client.aclose()

    @pytest.mark.asyncio
    async def test_non_json_body(self, mock_client_factory) -> None:
        client = mock_client_factory(lambda request: httpx.Response(200, text="<html>"))
        source = HttpDocumentSource("http://design.test/doc", client=client)

        with pytest.raises(DocumentLoadError) as excinfo:
            await source.fetch()

        assert excinfo.value.details["reason"] == "decode"
        await client.aclose()
