"""CLI interface tests - command-line workflows against stubbed services."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from localnet.cli import cli
from localnet.registry import NodeRegistry, NodeStatus, RegistryLock


@pytest.fixture
def cli_runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def patched_cli(config, controller, probe):
    """Route the CLI to the test config, stub controller and stub probe."""
    with patch("localnet.cli.load_config", return_value=config), \
         patch("localnet.cli.setup_logging"), \
         patch("localnet.cli.create_controller", return_value=controller), \
         patch("localnet.cli.NodeRpcClient", return_value=probe), \
         patch("localnet.cli.shutil.which", return_value=None):
        yield


def run_args(node_bin, *extra):
    return [
        "run",
        "--count",
        "3",
        "--interval",
        "0",
        "--node-path",
        str(node_bin),
        "--node-version",
        "0.1.0",
        *extra,
    ]


class TestCLIBasics:
    """Test essential CLI functionality."""

    def test_cli_entry_point(self, cli_runner):
        """Test CLI entry point is accessible."""
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "localnet" in result.output.lower()

    def test_commands_listed(self, cli_runner):
        result = cli_runner.invoke(cli, ["--help"])

        for command in ("run", "join", "kill", "status", "config"):
            assert command in result.output

    def test_invalid_config_file(self, cli_runner, tmp_path):
        """Test a broken config file exits with an error."""
        bad_config = tmp_path / "bad.toml"
        bad_config.write_text("interval = [not valid toml")

        with patch("localnet.cli.setup_logging"):
            result = cli_runner.invoke(cli, ["--config", str(bad_config), "status"])

        assert result.exit_code == 1
        assert "Configuration Error" in result.output


@pytest.mark.usefixtures("patched_cli")
class TestRunCommand:
    """Test the run command."""

    def test_run_starts_network(self, cli_runner, config, node_bin):
        result = cli_runner.invoke(cli, run_args(node_bin))

        assert result.exit_code == 0, result.output
        assert "3 of 3 nodes running" in result.output
        registry = NodeRegistry.load(config.registry_path)
        assert len(registry) == 3
        assert all(record.status == NodeStatus.RUNNING for record in registry.all())
        assert all(record.version == "0.1.0" for record in registry.all())

    def test_run_minimal_verbosity_is_quiet(self, cli_runner, node_bin):
        result = cli_runner.invoke(cli, run_args(node_bin, "--verbosity", "minimal"))

        assert result.exit_code == 0
        assert "nodes running" not in result.output

    def test_run_full_verbosity_shows_table(self, cli_runner, node_bin):
        result = cli_runner.invoke(cli, run_args(node_bin, "--verbosity", "full"))

        assert result.exit_code == 0
        assert "node-local3" in result.output

    def test_run_with_faucet(self, cli_runner, config, node_bin, faucet_bin):
        result = cli_runner.invoke(
            cli,
            run_args(
                node_bin,
                "--skip-validation",
                "--faucet-path",
                str(faucet_bin),
                "--faucet-version",
                "0.2.0",
            ),
        )

        assert result.exit_code == 0, result.output
        assert "Faucet: running" in result.output
        faucet = NodeRegistry.load(config.registry_path).find("faucet")
        assert faucet.version == "0.2.0"

    def test_run_twice_is_refused(self, cli_runner, node_bin, controller):
        assert cli_runner.invoke(cli, run_args(node_bin)).exit_code == 0
        starts = len([call for call in controller.calls if call[0] == "start"])

        result = cli_runner.invoke(cli, run_args(node_bin))

        assert result.exit_code == 1
        assert "already running" in result.output
        assert len([call for call in controller.calls if call[0] == "start"]) == starts

    def test_run_clean_replaces_network(self, cli_runner, config, node_bin, controller):
        assert cli_runner.invoke(cli, run_args(node_bin)).exit_code == 0

        result = cli_runner.invoke(cli, run_args(node_bin, "--clean"))

        assert result.exit_code == 0, result.output
        assert ("remove", "node-local1") in controller.calls
        registry = NodeRegistry.load(config.registry_path)
        assert [record.status for record in registry.all()] == [NodeStatus.RUNNING] * 3

    def test_run_partial_failure_exits_non_zero(self, cli_runner, config, node_bin, probe):
        probe.fail = {"node-local2"}

        result = cli_runner.invoke(cli, run_args(node_bin))

        assert result.exit_code == 1
        assert "2 of 3 nodes running" in result.output
        assert "node-local2" in result.output
        registry = NodeRegistry.load(config.registry_path)
        assert registry.find("node-local2").status == NodeStatus.FAILED

    def test_run_without_node_binary(self, cli_runner):
        result = cli_runner.invoke(cli, ["run", "--count", "1"])

        assert result.exit_code == 1
        assert "safenode" in result.output

    def test_run_while_registry_locked(self, cli_runner, config, node_bin, controller):
        config.ensure_directories()
        with RegistryLock(config.lock_path):
            result = cli_runner.invoke(cli, run_args(node_bin))

        assert result.exit_code == 1
        assert "Another localnet command" in result.output
        assert controller.calls == []


@pytest.mark.usefixtures("patched_cli")
class TestJoinCommand:
    """Test the join command."""

    def test_join_with_peer(self, cli_runner, config, node_bin, controller):
        peer = "/ip4/10.0.0.2/udp/5000/quic-v1/p2p/remote"

        result = cli_runner.invoke(
            cli,
            [
                "join",
                "--count",
                "2",
                "--interval",
                "0",
                "--node-path",
                str(node_bin),
                "--node-version",
                "0.1.0",
                "--peer",
                peer,
            ],
        )

        assert result.exit_code == 0, result.output
        args = controller.installed["node-local1"]["args"]
        assert args[args.index("--peer") + 1] == peer
        assert len(NodeRegistry.load(config.registry_path)) == 2

    def test_join_existing_local_network(self, cli_runner, config, node_bin):
        assert cli_runner.invoke(cli, run_args(node_bin)).exit_code == 0

        result = cli_runner.invoke(
            cli,
            ["join", "--count", "1", "--interval", "0", "--node-path", str(node_bin), "--node-version", "0.1.0"],
        )

        assert result.exit_code == 0, result.output
        assert NodeRegistry.load(config.registry_path).find("node-local4") is not None

    def test_join_without_peers(self, cli_runner, node_bin):
        result = cli_runner.invoke(
            cli,
            ["join", "--count", "1", "--node-path", str(node_bin), "--node-version", "0.1.0"],
        )

        assert result.exit_code == 1
        assert "No peers" in result.output


@pytest.mark.usefixtures("patched_cli")
class TestKillCommand:
    """Test the kill command."""

    def test_kill_running_network(self, cli_runner, config, node_bin, controller):
        assert cli_runner.invoke(cli, run_args(node_bin)).exit_code == 0

        result = cli_runner.invoke(cli, ["kill"])

        assert result.exit_code == 0, result.output
        assert "Removed 3 services" in result.output
        assert not config.registry_path.exists()
        assert controller.running == {}

    def test_kill_with_no_network(self, cli_runner):
        result = cli_runner.invoke(cli, ["kill"])

        assert result.exit_code == 0
        assert "No local network is currently running" in result.output

    def test_kill_failure_keeps_registry(self, cli_runner, config, node_bin, controller):
        assert cli_runner.invoke(cli, run_args(node_bin)).exit_code == 0
        controller.fail_stop = {"node-local1"}

        result = cli_runner.invoke(cli, ["kill"])

        assert result.exit_code == 1
        registry = NodeRegistry.load(config.registry_path)
        assert registry.find("node-local1").status == NodeStatus.RUNNING
        assert registry.find("node-local2").status == NodeStatus.REMOVED

    def test_kill_keep_directories(self, cli_runner, config, node_bin):
        assert cli_runner.invoke(cli, run_args(node_bin)).exit_code == 0

        result = cli_runner.invoke(cli, ["kill", "--keep-directories"])

        assert result.exit_code == 0
        assert (config.nodes_dir / "node-local1" / "data").is_dir()


@pytest.mark.usefixtures("patched_cli")
class TestStatusCommand:
    """Test the status command."""

    def test_status_empty(self, cli_runner):
        result = cli_runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "No local network is currently running" in result.output

    def test_status_table(self, cli_runner, node_bin):
        assert cli_runner.invoke(cli, run_args(node_bin)).exit_code == 0

        result = cli_runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "node-local1" in result.output
        assert "RUNNING" in result.output

        assert cli_runner.invoke(cli, ["status", "--details"]).exit_code == 0

    def test_status_json(self, cli_runner, node_bin):
        assert cli_runner.invoke(cli, run_args(node_bin)).exit_code == 0

        result = cli_runner.invoke(cli, ["status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert len(data["nodes"]) == 3
        assert data["faucet"] is None

    def test_status_fail_flag(self, cli_runner, config, node_bin, controller):
        assert cli_runner.invoke(cli, run_args(node_bin)).exit_code == 0
        controller.running.pop("node-local3")

        result = cli_runner.invoke(cli, ["status", "--fail"])

        assert result.exit_code == 1
        assert "not running" in result.output
        registry = NodeRegistry.load(config.registry_path)
        assert registry.find("node-local3").status == NodeStatus.STOPPED


class TestConfigCommands:
    """Test configuration commands."""

    def test_config_show(self, cli_runner, config):
        with patch("localnet.cli.load_config", return_value=config), \
             patch("localnet.cli.setup_logging"):
            result = cli_runner.invoke(cli, ["config", "show"])

        assert result.exit_code == 0
        assert "Service Manager" in result.output
        assert "process" in result.output

    def test_config_init(self, cli_runner, config, tmp_path):
        target = tmp_path / "conf" / "config.toml"

        with patch("localnet.cli.load_config", return_value=config), \
             patch("localnet.cli.setup_logging"):
            result = cli_runner.invoke(cli, ["config", "init", "--path", str(target)])

        assert result.exit_code == 0
        assert target.exists()
        assert "service_manager" in target.read_text()


class TestStatusLogging:
    """Test status output with the real logging setup in place."""

    @pytest.fixture
    def real_logging_cli(self, config, controller, probe):
        with patch("localnet.cli.load_config", return_value=config), \
             patch("localnet.cli.create_controller", return_value=controller), \
             patch("localnet.cli.NodeRpcClient", return_value=probe), \
             patch("localnet.cli.shutil.which", return_value=None):
            yield

    @pytest.mark.usefixtures("real_logging_cli")
    def test_json_stays_parseable_when_status_is_corrected(self, cli_runner, node_bin, controller):
        """Test log lines about corrected records never reach stdout."""
        assert cli_runner.invoke(cli, run_args(node_bin)).exit_code == 0
        controller.running.pop("node-local2")

        result = cli_runner.invoke(cli, ["status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["corrected"] == ["node-local2"]
        statuses = {node["service_name"]: node["status"] for node in data["nodes"]}
        assert statuses["node-local2"] == "stopped"
        assert "node-local2" in result.stderr

    @pytest.mark.usefixtures("real_logging_cli")
    def test_status_reports_live_peer_count(self, cli_runner, node_bin, probe):
        assert cli_runner.invoke(cli, run_args(node_bin)).exit_code == 0
        probe.connected_peers = 11

        result = cli_runner.invoke(cli, ["status", "--json"])

        data = json.loads(result.stdout)
        assert [node["connected_peers"] for node in data["nodes"]] == [11, 11, 11]
        assert probe.closed


@pytest.mark.usefixtures("patched_cli")
class TestUnexpectedErrors:
    """Test errors from outside the Localnet hierarchy."""

    def test_unexpected_error_is_displayed(self, cli_runner):
        with patch("localnet.cli.NodeRegistry.load", side_effect=RuntimeError("registry exploded")):
            result = cli_runner.invoke(cli, ["status"])

        assert result.exit_code == 1
        assert "System Error" in result.output
        assert "registry exploded" in result.output
