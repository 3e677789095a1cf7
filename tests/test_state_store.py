"""Tests for swe_swarm.execution.state_store."""

from __future__ import annotations

import json
import os

import pytest

from swe_swarm.exceptions import AlreadyExists, CorruptState, NotFound
from swe_swarm.execution.plan import sequential_plan
from swe_swarm.execution.schemas import (
    ErrorKind,
    ItemStatus,
    RunKind,
    RunStatus,
)
from swe_swarm.execution.state_store import (
    MAX_ERROR_MESSAGE_CHARS,
    StateStore,
    atomic_write,
    mark_item,
    mark_wave_complete,
    record_error,
    register_items,
    set_run_status,
    validate_run_id,
)


@pytest.fixture
def store(state_dir) -> StateStore:
    return StateStore(state_dir)


class TestInitializeAndLoad:
    def test_initialize_creates_document(self, store):
        state = store.initialize("epic-1")
        assert state.status == RunStatus.INITIALIZED
        assert state.kind == RunKind.EPIC
        assert state.pid == os.getpid()
        assert store.exists("epic-1")
        assert store.load("epic-1") == state

    def test_initialize_refuses_existing(self, store):
        store.initialize("epic-1")
        with pytest.raises(AlreadyExists):
            store.initialize("epic-1")

    def test_fresh_only_over_completed(self, store):
        store.initialize("epic-1")
        with pytest.raises(AlreadyExists):
            store.initialize("epic-1", fresh=True)

        store.update("epic-1", lambda s: set_run_status(s, RunStatus.COMPLETED))
        state = store.initialize("epic-1", fresh=True)
        assert state.status == RunStatus.INITIALIZED

    def test_load_missing(self, store):
        with pytest.raises(NotFound):
            store.load("epic-404")

    def test_load_corrupt(self, store, state_dir):
        os.makedirs(state_dir, exist_ok=True)
        with open(store.state_path("epic-1"), "w") as f:
            f.write("{not json")
        with pytest.raises(CorruptState):
            store.load("epic-1")

    def test_load_rejects_unknown_fields(self, store):
        store.initialize("epic-1")
        path = store.state_path("epic-1")
        with open(path) as f:
            data = json.load(f)
        data["surprise"] = True
        with open(path, "w") as f:
            json.dump(data, f)
        with pytest.raises(CorruptState):
            store.load("epic-1")

    def test_load_never_writes(self, store):
        store.initialize("epic-1")
        before = open(store.state_path("epic-1"), "rb").read()
        store.load("epic-1")
        assert open(store.state_path("epic-1"), "rb").read() == before

    def test_invalid_run_id(self, store):
        with pytest.raises(ValueError):
            store.initialize("../escape")
        with pytest.raises(ValueError):
            validate_run_id("")


class TestUpdate:
    def test_update_persists(self, store):
        store.initialize("epic-1")
        store.update("epic-1", lambda s: register_items(s, ["1", "2"]))
        assert set(store.load("epic-1").items) == {"1", "2"}

    def test_mutator_may_return_none(self, store):
        store.initialize("epic-1")

        def _mutate(state):
            state.current_wave = 3

        assert store.update("epic-1", _mutate).current_wave == 3
        assert store.load("epic-1").current_wave == 3

    def test_failed_mutator_leaves_state_untouched(self, store):
        store.initialize("epic-1")
        before = open(store.state_path("epic-1"), "rb").read()

        def _boom(state):
            state.current_wave = 9
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.update("epic-1", _boom)
        assert open(store.state_path("epic-1"), "rb").read() == before

    def test_no_temp_files_left(self, store, state_dir):
        store.initialize("epic-1")
        for _ in range(5):
            store.update("epic-1", lambda s: mark_wave_complete(s, 1))
        assert sorted(os.listdir(state_dir)) == ["epic-1.json"]


class TestMutators:
    def _state(self, store):
        store.initialize("epic-1")
        return store.update("epic-1", lambda s: register_items(s, ["A"]))

    def test_failed_transition_counts_attempt(self, store):
        state = self._state(store)
        mark_item(state, "A", ItemStatus.IN_PROGRESS)
        mark_item(state, "A", ItemStatus.FAILED, message="NETWORK_ERROR")
        assert state.item("A").attempts == 1
        mark_item(state, "A", ItemStatus.IN_PROGRESS)
        mark_item(state, "A", ItemStatus.COMPLETED, artifact="https://example/pr/1")
        assert state.item("A").attempts == 1
        assert state.item("A").status == ItemStatus.COMPLETED
        assert state.item("A").artifact == "https://example/pr/1"

    def test_fatal_is_terminal(self, store):
        state = self._state(store)
        mark_item(state, "A", ItemStatus.IN_PROGRESS)
        mark_item(state, "A", ItemStatus.FATAL)
        for status in ItemStatus:
            with pytest.raises(ValueError):
                mark_item(state, "A", status)

    def test_completed_is_terminal(self, store):
        state = self._state(store)
        mark_item(state, "A", ItemStatus.IN_PROGRESS)
        mark_item(state, "A", ItemStatus.COMPLETED)
        with pytest.raises(ValueError):
            mark_item(state, "A", ItemStatus.IN_PROGRESS)

    def test_pending_cannot_fail_directly(self, store):
        state = self._state(store)
        with pytest.raises(ValueError):
            mark_item(state, "A", ItemStatus.FAILED)

    def test_register_keeps_existing(self, store):
        state = self._state(store)
        mark_item(state, "A", ItemStatus.IN_PROGRESS)
        register_items(state, ["A", "B"])
        assert state.item("A").status == ItemStatus.IN_PROGRESS
        assert state.item("B").status == ItemStatus.PENDING

    def test_record_error_truncates(self, store):
        state = self._state(store)
        record_error(state, "A", ErrorKind.NETWORK, "x" * (MAX_ERROR_MESSAGE_CHARS + 50))
        assert len(state.errors) == 1
        assert len(state.errors[0].message) == MAX_ERROR_MESSAGE_CHARS + 3
        assert state.errors[0].kind == ErrorKind.NETWORK

    def test_mark_wave_complete_is_sorted_and_unique(self, store):
        state = self._state(store)
        for wave in (2, 1, 2):
            mark_wave_complete(state, wave)
        assert state.completed_waves == [1, 2]


class TestPlanDocuments:
    def test_round_trip(self, store):
        plan = sequential_plan([3, 1, 2])
        store.save_plan("epic-1", plan)
        assert store.load_plan("epic-1") == plan

    def test_missing_plan(self, store):
        assert store.load_plan("epic-1") is None

    def test_discard(self, store):
        store.initialize("epic-1")
        store.save_plan("epic-1", sequential_plan([1]))
        store.discard("epic-1")
        assert not store.exists("epic-1")
        assert store.load_plan("epic-1") is None


class TestAtomicWrite:
    def test_replaces_content(self, tmp_path):
        path = str(tmp_path / "doc.json")
        atomic_write(path, "one")
        atomic_write(path, "two")
        assert open(path).read() == "two"
        assert os.listdir(tmp_path) == ["doc.json"]
