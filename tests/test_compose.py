import os
import sys
import threading
import unittest
from pathlib import Path
from unittest import mock

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))
from dockup.services.compose import ComposeDriver, compose_environment  # noqa: E402
from dockup.services.demo import DemoGateway  # noqa: E402


class FakeStdout:
    def __init__(self, lines, block=None):
        self.lines = lines
        self.block = block
        self.closed = False

    def __iter__(self):
        for line in self.lines:
            yield line
        if self.block is not None:
            self.block.wait(5)

    def close(self):
        self.closed = True


class FakeProcess:
    def __init__(self, lines=(), returncode=0, hang=False):
        self.killed = threading.Event()
        self.stdout = FakeStdout(list(lines), self.killed if hang else None)
        self.returncode = returncode

    def kill(self):
        self.killed.set()

    def wait(self, timeout=None):
        return -9 if self.killed.is_set() else self.returncode


class ComposeDriverTests(unittest.TestCase):
    def setUp(self):
        self.gateway = DemoGateway()
        self.driver = ComposeDriver(self.gateway, timeout=30)
        patcher = mock.patch("dockup.services.compose.subprocess.Popen")
        self.popen = patcher.start()
        self.addCleanup(patcher.stop)

    def test_build_command_uses_compose_labels(self):
        command = self.driver.build_command("web", ["pull"])

        self.assertEqual(
            command,
            [
                "docker", "compose", "-p", "web",
                "--project-directory", "/srv/compose/web",
                "-f", "/srv/compose/web/compose.yaml",
                "pull",
            ],
        )

    def test_build_command_without_labels(self):
        with self.assertLogs("dockup.services.compose", level="WARNING"):
            command = self.driver.build_command("ghost", ["down"])

        self.assertEqual(command, ["docker", "compose", "-p", "ghost", "down"])

    def test_pull_streams_output(self):
        self.popen.return_value = FakeProcess(["Pulling nginx\n", "Pulled\n"])
        seen = []

        result = self.driver.pull("web", "nginx", on_output=seen.append)

        self.assertTrue(result.success)
        self.assertEqual(result.output, "Pulling nginx\nPulled\n")
        self.assertEqual(seen, ["Pulling nginx\n", "Pulled\n"])
        command = self.popen.call_args[0][0]
        self.assertEqual(command[-2:], ["pull", "nginx"])
        self.assertIsNone(self.popen.call_args[1]["cwd"])
        self.assertEqual(self.popen.call_args[1]["encoding"], "utf-8")
        self.assertEqual(self.popen.call_args[1]["errors"], "replace")

    def test_up_flags(self):
        self.popen.return_value = FakeProcess()

        self.driver.up("web", build=True, pull=True)

        self.assertEqual(self.popen.call_args[0][0][-5:], ["up", "-d", "--build", "--pull", "always"])

    def test_down_flags(self):
        self.popen.return_value = FakeProcess()

        self.driver.down("web", volumes=True, remove_orphans=True)

        self.assertEqual(self.popen.call_args[0][0][-3:], ["down", "-v", "--remove-orphans"])

    def test_non_zero_exit_reports_output(self):
        self.popen.return_value = FakeProcess(["no such service: nope\n"], returncode=1)

        result = self.driver.pull("web", "nope")

        self.assertFalse(result.success)
        self.assertEqual(result.returncode, 1)
        self.assertEqual(result.error, "no such service: nope")

    def test_silent_failure_reports_exit_status(self):
        self.popen.return_value = FakeProcess(returncode=17)

        result = self.driver.pull("web")

        self.assertEqual(result.error, "docker compose exited with status 17")

    def test_process_without_output_pipe(self):
        process = FakeProcess(returncode=0)
        process.stdout = None
        self.popen.return_value = process

        result = self.driver.pull("web")

        self.assertTrue(result.success)
        self.assertEqual(result.output, "")

    def test_missing_binary(self):
        self.popen.side_effect = FileNotFoundError("docker")

        result = self.driver.pull("web")

        self.assertFalse(result.success)
        self.assertIn("Unable to run docker compose", result.error)

    def test_timeout_kills_the_process(self):
        self.driver.timeout = 0.2
        process = FakeProcess(["Pulling\n"], hang=True)
        self.popen.return_value = process

        result = self.driver.pull("web")

        self.assertTrue(process.killed.is_set())
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Command timed out after 0.2s")
        self.assertEqual(result.output, "Pulling\n")

    def test_failing_callback_aborts(self):
        process = FakeProcess(["one\n", "two\n"])
        self.popen.return_value = process
        calls = []

        def on_output(line):
            calls.append(line)
            raise BrokenPipeError("client went away")

        result = self.driver.pull("web", on_output=on_output)

        self.assertEqual(calls, ["one\n"])
        self.assertTrue(process.killed.is_set())
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Command aborted")

    def test_output_is_capped(self):
        with mock.patch("dockup.services.compose.MAX_OUTPUT_SIZE", 10):
            self.popen.return_value = FakeProcess(["0123456789abc\n", "more\n"])
            result = self.driver.pull("web")

        self.assertEqual(result.output, "0123456789")


def test_compose_environment_filters_secrets():
    env = {
        "PATH": "/usr/bin",
        "HOME": "/root",
        "DOCKER_HOST": "unix:///var/run/docker.sock",
        "COMPOSE_PROJECT_NAME": "x",
        "DOCKERHUB_TOKEN": "secret",
        "GHCR_TOKEN": "secret",
        "SECRET_KEY": "secret",
        "LANG": "",
    }

    assert compose_environment(env) == {
        "PATH": "/usr/bin",
        "HOME": "/root",
        "DOCKER_HOST": "unix:///var/run/docker.sock",
        "COMPOSE_PROJECT_NAME": "x",
    }


@pytest.mark.skipif(os.name != "posix", reason="needs a shell script as the docker binary")
def test_undecodable_output_is_replaced(tmp_path):
    fake_docker = tmp_path / "docker"
    fake_docker.write_text("#!/bin/sh\nprintf 'pulling \\377\\376 done\\n'\n")
    fake_docker.chmod(0o755)
    driver = ComposeDriver(DemoGateway(), timeout=30, docker_bin=str(fake_docker))

    result = driver.pull("web")

    assert result.success
    assert result.output == "pulling \ufffd\ufffd done\n"
