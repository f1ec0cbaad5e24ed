import json

import pytest

from gpinstaller.errors import InstallerError
from gpinstaller.models import Host, InstallationState, Role, RunState
from gpinstaller.services.state import StateService


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None


def _state():
    coordinator = Host("cdw", Role.COORDINATOR, completed_phases=["PREFLIGHT"])
    segment = Host("sdw1", Role.SEGMENT)
    return InstallationState(
        hosts=[coordinator, segment],
        current_phase="HOST_SETUP",
        cursors={"cdw": "create_admin_user"},
        run_state=RunState.HOST_SETUP,
    )


def test_state_service_writes_serialized_state(tmp_path):
    state_file = tmp_path / "nested" / "gpinstaller-state.json"
    service = StateService(str(state_file), logger=DummyLogger())

    service.save(_state().to_dict())

    loaded = json.loads(state_file.read_text(encoding="utf-8"))
    assert loaded["schema_version"] == StateService.SCHEMA_VERSION
    assert loaded["run_state"] == "HOST_SETUP"
    assert loaded["cursors"] == {"cdw": "create_admin_user"}
    assert loaded["hosts"][0]["completed_phases"] == ["PREFLIGHT"]
    assert "updated_at" in loaded
    assert [path.name for path in state_file.parent.iterdir()] == ["gpinstaller-state.json"]


def test_state_service_load_round_trips_latest_save(tmp_path):
    service = StateService(str(tmp_path / "state.json"), logger=DummyLogger())
    state = _state()
    service.save(state.to_dict())

    state.run_state = RunState.COMPLETE
    service.save(state.to_dict())

    assert service.load()["run_state"] == "COMPLETE"


def test_state_service_load_returns_none_without_file(tmp_path):
    service = StateService(str(tmp_path / "missing.json"), logger=DummyLogger())

    assert service.load() is None


def test_state_service_rejects_unknown_schema(tmp_path):
    state_file = tmp_path / "state.json"
    state_file.write_text(json.dumps({"schema_version": 99}), encoding="utf-8")
    service = StateService(str(state_file), logger=DummyLogger())

    with pytest.raises(InstallerError, match="invalid format"):
        service.load()
