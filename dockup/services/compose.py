import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional

from .docker import EngineGateway

OutputCallback = Callable[[str], None]

MAX_OUTPUT_SIZE = 10 * 1024 * 1024
KILL_GRACE_SECONDS = 5

_PASSTHROUGH_VARS = ("PATH", "HOME", "USER", "SHELL", "TERM", "LANG", "LC_ALL")
_DOCKER_VARS = ("DOCKER_HOST", "DOCKER_TLS_VERIFY", "DOCKER_CERT_PATH", "DOCKER_CONFIG", "DOCKER_BUILDKIT")


@dataclass(frozen=True)
class ComposeResult:
    success: bool
    output: str = ""
    error: Optional[str] = None
    returncode: Optional[int] = None


def compose_environment(env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Only what docker compose needs; registry tokens and app secrets stay out of the child."""
    env = os.environ if env is None else env
    filtered = {key: env[key] for key in _PASSTHROUGH_VARS + _DOCKER_VARS if env.get(key)}
    filtered.update({key: value for key, value in env.items() if key.startswith("COMPOSE_")})
    return filtered


class ComposeDriver:
    """Runs ``docker compose`` for projects discovered through their containers' labels.

    Output is streamed line by line to ``on_output`` and collected (up to
    10 MB) into the result. Process failures, timeouts and a failing
    callback all come back as an unsuccessful :class:`ComposeResult`.
    """

    def __init__(self, gateway: EngineGateway, timeout: int = 300, docker_bin: str = "docker"):
        self.logger = logging.getLogger(__name__)
        self.gateway = gateway
        self.timeout = timeout
        self.docker_bin = docker_bin

    def pull(self, project: str, service: Optional[str] = None, on_output: Optional[OutputCallback] = None) -> ComposeResult:
        args = ["pull"]
        if service:
            args.append(service)
        return self._run(project, args, on_output)

    def up(
        self,
        project: str,
        service: Optional[str] = None,
        build: bool = False,
        pull: bool = False,
        on_output: Optional[OutputCallback] = None,
    ) -> ComposeResult:
        args = ["up", "-d"]
        if build:
            args.append("--build")
        if pull:
            args.extend(["--pull", "always"])
        if service:
            args.append(service)
        return self._run(project, args, on_output)

    def down(
        self,
        project: str,
        volumes: bool = False,
        remove_orphans: bool = False,
        on_output: Optional[OutputCallback] = None,
    ) -> ComposeResult:
        args = ["down"]
        if volumes:
            args.append("-v")
        if remove_orphans:
            args.append("--remove-orphans")
        return self._run(project, args, on_output)

    def build_command(self, project: str, args: List[str]) -> List[str]:
        command = [self.docker_bin, "compose", "-p", project]

        containers = self.gateway.project_snapshot(project)
        source = next((c for c in containers if c.config_files or c.working_dir), None)
        if source is not None:
            if source.working_dir:
                command.extend(["--project-directory", source.working_dir])
            for path in source.config_paths:
                command.extend(["-f", path])
        else:
            self.logger.warning("No compose labels found for project %s", project)

        return command + list(args)

    def _working_dir(self, project: str) -> Optional[str]:
        for container in self.gateway.project_snapshot(project):
            if container.working_dir and os.path.isdir(container.working_dir):
                return container.working_dir
        return None

    def _run(self, project: str, args: List[str], on_output: Optional[OutputCallback]) -> ComposeResult:
        command = self.build_command(project, args)
        printable = " ".join(command)
        self.logger.debug("Running %s", printable)

        try:
            proc = subprocess.Popen(
                command,
                cwd=self._working_dir(project),
                env=compose_environment(),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            self.logger.error("Unable to start %s: %s", printable, exc)
            return ComposeResult(False, "", f"Unable to run docker compose: {exc}")

        timed_out = threading.Event()
        aborted = threading.Event()

        def _kill():
            timed_out.set()
            self.logger.warning("Command timed out, killing process: %s", printable)
            proc.kill()

        timer = threading.Timer(self.timeout, _kill)
        timer.daemon = True
        timer.start()

        chunks: List[str] = []
        size = 0
        returncode: Optional[int] = None
        try:
            for line in proc.stdout or ():
                if size < MAX_OUTPUT_SIZE:
                    chunk = line[: MAX_OUTPUT_SIZE - size]
                    chunks.append(chunk)
                    size += len(chunk)
                if on_output is None or aborted.is_set():
                    continue
                try:
                    on_output(line)
                except Exception as exc:
                    self.logger.warning("Output callback failed, aborting %s: %s", printable, exc)
                    aborted.set()
                    proc.kill()
            returncode = proc.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            proc.kill()
            returncode = proc.wait()
        finally:
            timer.cancel()
            if proc.stdout is not None:
                proc.stdout.close()
            if returncode is None:
                # The read loop raised: reap the child before propagating.
                proc.kill()
                proc.wait()

        output = "".join(chunks)
        if timed_out.is_set():
            error: Optional[str] = f"Command timed out after {self.timeout}s"
        elif aborted.is_set():
            error = "Command aborted"
        elif returncode != 0:
            error = output.strip() or f"docker compose exited with status {returncode}"
        else:
            error = None

        if error:
            self.logger.warning("%s failed (exit %s): %s", printable, returncode, error[:500])
        else:
            self.logger.debug("%s completed", printable)

        return ComposeResult(error is None, output, error, returncode)
