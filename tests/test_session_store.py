from __future__ import annotations

import stat
from pathlib import Path

import pytest
import yaml

from ai_orchestrator.errors import AlreadyExists, InvalidIdentifier, MalformedRecord, NotFound
from ai_orchestrator.storage import session_store as session_store_module
from ai_orchestrator.storage import SessionStore
from ai_orchestrator.storage.models import PlanPhase, PlanTask
from ai_orchestrator.storage.session_store import REQUIRED_FILES


def _snapshot(directory: Path) -> dict[str, bytes]:
    return {
        str(path.relative_to(directory)): path.read_bytes()
        for path in sorted(directory.rglob("*"))
        if path.is_file()
    }


def test_init_creates_complete_session(store: SessionStore) -> None:
    handle = store.init("auth-feature", "login system")

    assert handle.path == store.root / "auth-feature"
    for name in REQUIRED_FILES:
        assert (handle.path / name).is_file()
    assert handle.artifacts_path.is_dir()
    assert stat.S_IMODE(handle.path.stat().st_mode) == 0o700
    assert stat.S_IMODE(handle.state_path.stat().st_mode) == 0o600

    state = yaml.safe_load(handle.state_path.read_text())
    assert state["feature_id"] == "auth-feature"
    assert state["current_state"]["active_task"] is None
    assert state["current_state"]["started_at"] == "2025-01-15T12:00:00Z"

    plan = store.read_plan(handle)
    assert plan.feature.description == "login system"
    assert plan.phases == []
    assert handle.history_path.read_text() == ""

    metadata = store.read_metadata(handle)
    assert metadata.interactions == []
    assert metadata.total_cost == 0
    assert metadata.session_name == "auth-feature"


def test_init_registers_feature(store: SessionStore) -> None:
    store.init("auth-feature")
    store.init("billing")

    assert store.registry.feature_ids() == ["auth-feature", "billing"]


def test_duplicate_init_leaves_files_unchanged(store: SessionStore, clock) -> None:
    handle = store.init("auth-feature", "login system")
    before = _snapshot(handle.path)
    registry_before = store.registry.path.read_bytes()

    clock.advance(hours=2)
    with pytest.raises(AlreadyExists):
        store.init("auth-feature", "something else")

    assert _snapshot(handle.path) == before
    assert store.registry.path.read_bytes() == registry_before


@pytest.mark.parametrize("feature_id", ["", "Has Upper", "with space", "a/b", "..", "../escape", "UPPER"])
def test_invalid_id_creates_nothing(store: SessionStore, session_root: Path, feature_id: str) -> None:
    with pytest.raises(InvalidIdentifier):
        store.init(feature_id)

    assert not session_root.exists()


def test_failed_init_rolls_back(
    store: SessionStore, session_root: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def explode(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(session_store_module, "atomic_write_json", explode)

    with pytest.raises(OSError):
        store.init("auth-feature")

    leftovers = sorted(path.name for path in session_root.iterdir())
    assert leftovers == ["active-features.lock"]
    assert not store.exists("auth-feature")


def test_blocking_artifact_never_yields_partial_session(store: SessionStore, session_root: Path) -> None:
    blocked = session_root / "auth-feature"
    blocked.mkdir(parents=True)

    with pytest.raises(AlreadyExists):
        store.init("auth-feature")

    assert list(blocked.iterdir()) == []
    assert not any(path.name.startswith(".init-") for path in session_root.iterdir())


def test_get_unknown_and_incomplete_sessions(store: SessionStore, session_root: Path) -> None:
    with pytest.raises(NotFound):
        store.get("missing")

    (session_root / "partial" / "artifacts").mkdir(parents=True)
    with pytest.raises(MalformedRecord):
        store.get("partial")


def test_ensure_returns_existing_session(store: SessionStore) -> None:
    first = store.ensure("auth-feature", "login system")
    second = store.ensure("auth-feature", "ignored")

    assert first == second
    assert store.read_plan(second).feature.description == "login system"


def test_update_state_bumps_last_updated(store: SessionStore, clock) -> None:
    handle = store.init("auth-feature")
    clock.advance(minutes=5)

    state = store.update_state(handle, active_task="login-api", model_in_use="opus")

    assert state.current_state.active_task == "login-api"
    assert state.current_state.model_in_use == "opus"
    assert state.current_state.last_updated == "2025-01-15T12:05:00Z"
    assert state.current_state.started_at == "2025-01-15T12:00:00Z"

    cleared = store.update_state(handle, active_task=None)
    assert cleared.current_state.active_task is None
    assert cleared.current_state.model_in_use == "opus"


def test_update_plan_is_read_modify_write(store: SessionStore) -> None:
    handle = store.init("auth-feature")

    def add_phase(plan):
        plan.phases.append(
            PlanPhase(phase_id="p1", name="API", tasks=[PlanTask(task_id="login-api")])
        )
        return len(plan.phases)

    assert store.update_plan(handle, add_phase) == 1
    plan = store.read_plan(handle)
    assert plan.find_task("login-api") is not None
    assert plan.find_task("login-api").status == "pending"


def test_failed_transaction_writes_nothing(store: SessionStore) -> None:
    handle = store.init("auth-feature")
    before = handle.metadata_path.read_bytes()

    with pytest.raises(RuntimeError):
        with store.transaction(handle) as txn:
            txn.metadata.total_cost = 42.0
            raise RuntimeError("boom")

    assert handle.metadata_path.read_bytes() == before


def test_corrupt_plan_raises_malformed_record(store: SessionStore) -> None:
    handle = store.init("auth-feature")
    handle.plan_path.write_text("feature: [unterminated\n")

    with pytest.raises(MalformedRecord) as excinfo:
        store.read_plan(handle)

    assert excinfo.value.path.endswith("implementation-plan.yaml")


def test_remove_is_all_or_nothing(store: SessionStore, session_root: Path) -> None:
    store.init("auth-feature")
    store.init("billing")

    store.remove("auth-feature")

    assert not store.exists("auth-feature")
    assert store.session_names() == ["billing"]
    assert not any(path.name.startswith(".trash-") for path in session_root.iterdir())
    assert store.registry.feature_ids() == ["billing"]
    assert store.registry.feature_ids(status="removed") == ["auth-feature"]

    with pytest.raises(NotFound):
        store.remove("auth-feature")


def test_session_names_skip_hidden_entries(store: SessionStore, session_root: Path) -> None:
    store.init("auth-feature")
    (session_root / ".init-billing-abc").mkdir()
    (session_root / ".trash-old-1234").mkdir()

    assert store.session_names() == ["auth-feature"]


def test_reinit_after_remove_reactivates_registry(store: SessionStore) -> None:
    store.init("auth-feature")
    store.remove("auth-feature")
    store.init("auth-feature")

    entries = store.registry.entries()
    assert len(entries) == 1
    assert entries[0].status == "active"


def test_reads_do_not_rewrite_state(store: SessionStore, clock) -> None:
    handle = store.init("auth-feature")
    before = handle.state_path.read_bytes()
    clock.advance(minutes=5)

    store.read_state(handle)
    store.read_plan(handle)

    assert handle.state_path.read_bytes() == before

    store.update_state(handle, model_in_use="sonnet")
    assert store.read_state(handle).current_state.last_updated == "2025-01-15T12:05:00Z"


def test_registry_of_uninitialized_root_is_empty(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "never-created", lock_timeout=1.0)

    assert store.registry.entries() == []
    assert store.registry.feature_ids() == []
    assert store.session_names() == []
    assert not (tmp_path / "never-created").exists()
