"""Tests for the vmprovision command-line interface."""

from unittest import mock

import pytest
from typer.testing import CliRunner

from vmprovision.cli import app, parse_networks
from vmprovision.errors import PlacementError

runner = CliRunner()


@pytest.fixture
def orchestrator():
    with mock.patch('vmprovision.cli.ProxmoxClient'), \
         mock.patch('vmprovision.cli.build_orchestrator') as mock_build:
        orchestrator = mock.MagicMock()
        orchestrator.create.return_value = "vm-0001"
        mock_build.return_value = orchestrator
        orchestrator.build = mock_build
        yield orchestrator


def test_create_success(orchestrator):
    result = runner.invoke(app, ["create", "--image", "ubuntu-2404", "-n", "default=vmbr0", "--memory", "4096"])

    assert result.exit_code == 0
    assert "vm-0001" in result.output
    request = orchestrator.create.call_args[0][0]
    assert request.image_id == "ubuntu-2404"
    assert request.networks["default"].name == "vmbr0"
    assert orchestrator.build.call_args[0][1].memory_mb == 4096


def test_create_reads_environment_and_networks_files(orchestrator, tmp_path):
    env_file = tmp_path / "env.yaml"
    env_file.write_text("role: worker\n")
    networks_file = tmp_path / "networks.yaml"
    networks_file.write_text("private:\n  ip: 10.0.1.5\n  cloud_properties:\n    name: vmbr25gbe\n")

    result = runner.invoke(
        app,
        ["create", "-i", "ubuntu-2404", "--env", str(env_file), "--networks-file", str(networks_file), "-d", "local-zfs:vm-1-disk-1"],
    )

    assert result.exit_code == 0
    request = orchestrator.create.call_args[0][0]
    assert request.environment == {"role": "worker"}
    assert request.networks["private"].ip == "10.0.1.5"
    assert request.disk_ids == ["local-zfs:vm-1-disk-1"]


def test_create_failure_exits_nonzero(orchestrator):
    orchestrator.create.side_effect = PlacementError("No node has room")

    result = runner.invoke(app, ["create", "--image", "ubuntu-2404"])

    assert result.exit_code == 1
    assert "No node has room" in result.output


def test_create_rejects_malformed_network(orchestrator):
    result = runner.invoke(app, ["create", "--image", "ubuntu-2404", "-n", "vmbr0"])

    assert result.exit_code != 0
    orchestrator.create.assert_not_called()


def test_parse_networks_option_overrides_file(tmp_path):
    networks_file = tmp_path / "networks.yaml"
    networks_file.write_text("default:\n  cloud_properties:\n    name: vmbr1\n")

    networks = parse_networks(["default=vmbr0"], networks_file)

    assert networks["default"].name == "vmbr0"


@pytest.mark.parametrize("deleted,message", [(True, "Deleted"), (False, "does not exist")])
def test_delete(deleted, message):
    with mock.patch('vmprovision.cli.ProxmoxClient'), \
         mock.patch('vmprovision.cli.ProxmoxGateway') as mock_gateway:
        mock_gateway.return_value.delete_machine.return_value = deleted

        result = runner.invoke(app, ["delete", "vm-0001"])

    assert result.exit_code == 0
    assert message in result.output
    mock_gateway.return_value.delete_machine.assert_called_once_with("vm-0001")
