from dataclasses import replace

import pytest

from gpinstaller.errors import CommandFailure
from gpinstaller.models import CommandResult, InstallSettings, Phase, RunState
from gpinstaller.services.cluster_init import ClusterInitOrchestrator


def _run_driver(harness):
    orchestrator = ClusterInitOrchestrator(harness.settings, harness.logger, sleep=lambda _seconds: None)
    phase = Phase("CLUSTER_INIT", RunState.CLUSTER_INIT, driver=orchestrator)
    orchestrator(harness.runner, phase, harness.registry.hosts_for(phase))
    return orchestrator


def _positions(transport, predicate):
    return [index for index, (host, command) in enumerate(transport.commands) if predicate(host, command)]


def test_segments_start_only_after_coordinator_is_ready(make_transport, make_harness, three_host_settings):
    transport = make_transport()
    harness = make_harness(three_host_settings, transport)

    _run_driver(harness)

    init = _positions(transport, lambda host, command: host == "cdw" and "gpinitsystem -c" in command)
    ready = _positions(transport, lambda host, command: host == "cdw" and "gpstate -s" in command)
    segment_work = _positions(transport, lambda host, command: host in ("sdw1", "sdw2"))
    assert len(init) == 1
    assert segment_work
    assert init[0] < ready[0] < min(segment_work)
    for stage in ("GENERATE_CONFIG", "INIT_COORDINATOR", "INIT_SEGMENTS", "VERIFY"):
        assert harness.registry.all_done(f"CLUSTER_INIT.{stage}")
    assert harness.registry.all_done("CLUSTER_INIT.INIT_STANDBY") is False


def test_generate_config_uploads_rendered_files(make_transport, make_harness, three_host_settings, tmp_path):
    transport = make_transport()
    harness = make_harness(three_host_settings, transport)

    _run_driver(harness)

    remote_paths = sorted(remote for _host, _local, remote in transport.copies)
    assert remote_paths == ["/tmp/gpinstaller-gpinitsystem_config", "/tmp/gpinstaller-hostfile_gpinitsystem"]
    assert (tmp_path / "gpinstaller-hostfile_gpinitsystem").read_text(encoding="utf-8") == "sdw1\nsdw2\n"
    config = harness.runner.data.require("gpinitsystem_config")
    assert config["path"] == "/home/gpadmin/gpconfigs/gpinitsystem_config"
    assert "COORDINATOR_HOSTNAME=cdw" in config["content"]
    assert "MIRROR_PORT_BASE=50000" in config["content"]


def test_standby_is_initialized_from_coordinator_last(make_transport, make_harness, three_host_settings):
    transport = make_transport()
    harness = make_harness(replace(three_host_settings, standby_host="scdw"), transport)

    _run_driver(harness)

    standby_init = _positions(transport, lambda host, command: "gpinitstandby -s scdw -a" in command)
    segment_work = _positions(transport, lambda host, command: host in ("sdw1", "sdw2"))
    assert len(standby_init) == 1
    assert transport.commands[standby_init[0]][0] == "cdw"
    assert max(segment_work) < standby_init[0]
    assert any("mkdir -p /data/master" in command for command in transport.commands_for("scdw"))
    assert harness.registry.all_done("CLUSTER_INIT.INIT_STANDBY")


def test_single_node_resolves_hostname_for_config(make_transport, make_harness, tmp_path):
    def responder(host, command):
        if command == "hostname":
            return CommandResult(stdout="gp-single\n", stderr="", exit_code=0)
        return None

    settings = InstallSettings(coordinator_host="localhost", temp_dir=str(tmp_path), max_retries=0)
    transport = make_transport(responder)
    harness = make_harness(settings, transport)

    _run_driver(harness)

    content = harness.runner.data.require("gpinitsystem_config")["content"]
    assert "COORDINATOR_HOSTNAME=gp-single" in content
    assert "MIRROR_PORT_BASE" not in content
    assert (tmp_path / "gpinstaller-hostfile_gpinitsystem").read_text(encoding="utf-8") == "gp-single\n"
    assert {host for host, _command in transport.commands} == {"localhost"}


def test_gpinitsystem_warnings_are_tolerated(make_transport, make_harness, three_host_settings):
    def responder(host, command):
        if "gpinitsystem -c" in command:
            return CommandResult(stdout="", stderr="", exit_code=1)
        return None

    harness = make_harness(three_host_settings, make_transport(responder))

    _run_driver(harness)

    assert any("completed with warnings" in warning for warning in harness.logger.warnings)


def test_gpinitsystem_failure_stops_before_segments(make_transport, make_harness, three_host_settings):
    def responder(host, command):
        if "gpinitsystem -c" in command:
            return CommandResult(stdout="", stderr="FATAL: port in use", exit_code=2)
        return None

    transport = make_transport(responder)
    harness = make_harness(three_host_settings, transport)

    with pytest.raises(CommandFailure, match="port in use") as exc_info:
        _run_driver(harness)

    assert exc_info.value.host == "cdw"
    assert exc_info.value.phase == "CLUSTER_INIT.INIT_COORDINATOR"
    assert transport.commands_for("sdw1") == []


def test_render_config_lists_required_keys():
    orchestrator = ClusterInitOrchestrator(InstallSettings(coordinator_host="cdw"), logger=None)

    content = orchestrator.render_config("cdw", ["sdw1"])

    for line in (
        "SEG_PREFIX=gpseg",
        "PORT_BASE=40000",
        "declare -a DATA_DIRECTORY=(/data/primary)",
        "COORDINATOR_DIRECTORY=/data/master",
        "COORDINATOR_PORT=5432",
        "TRUSTED_SHELL=ssh",
        "MACHINE_LIST_FILE=/home/gpadmin/gpconfigs/hostfile_gpinitsystem",
    ):
        assert line in content.splitlines()
    assert "MIRROR_PORT_BASE" not in content


def test_pg_hba_entries_trust_cluster_hosts():
    orchestrator = ClusterInitOrchestrator(InstallSettings(coordinator_host="cdw"), logger=None)

    entries = orchestrator.pg_hba_entries(["localhost", "sdw1"]).splitlines()

    assert "host    all             gpadmin         sdw1    trust" in entries
    assert not any("localhost" in line for line in entries)


def test_verify_records_server_version(make_transport, make_harness, three_host_settings):
    def responder(host, command):
        if "SELECT version();" in command:
            return CommandResult(stdout="PostgreSQL 12.12 (Greenplum Database 7.1.0)\n", stderr="", exit_code=0)
        return None

    harness = make_harness(three_host_settings, make_transport(responder))

    _run_driver(harness)

    assert harness.runner.data.require("greenplum_server_version") == "PostgreSQL 12.12 (Greenplum Database 7.1.0)"


def test_failed_connectivity_query_only_warns(make_transport, make_harness, three_host_settings):
    def responder(host, command):
        if "SELECT version();" in command:
            return CommandResult(stdout="", stderr='database "tdi" does not exist', exit_code=2)
        return None

    harness = make_harness(three_host_settings, make_transport(responder))

    _run_driver(harness)

    assert harness.registry.all_done("CLUSTER_INIT.VERIFY")
    assert harness.runner.data.get("greenplum_server_version") is None
    assert any("does not exist" in warning for warning in harness.logger.warnings)
