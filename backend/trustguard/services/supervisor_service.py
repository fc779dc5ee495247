import abc
import logging
import re
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)

_VERSION_PATTERN = re.compile(r"v?(\d+(?:\.\d+)+)")


@dataclass
class CommandResult:
    args: List[str]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0

    def describe(self) -> str:
        if self.timed_out:
            return f"'{' '.join(self.args)}' timed out"
        if self.returncode is None:
            return f"'{' '.join(self.args)}' could not be started: {self.stderr.strip()}"
        detail = self.stderr.strip() or self.stdout.strip()
        return f"'{' '.join(self.args)}' exited {self.returncode}" + (f": {detail}" if detail else "")


def run_command(args: Sequence[str], timeout: float) -> CommandResult:
    """Run a command without a shell; timeouts and missing binaries are failures."""
    args = list(args)
    try:
        completed = subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning("Command timed out after %ss: %s", timeout, " ".join(args))
        return CommandResult(args=args, returncode=None, timed_out=True)
    except OSError as exc:
        logger.warning("Command failed to start: %s (%s)", " ".join(args), exc)
        return CommandResult(args=args, returncode=None, stderr=str(exc))

    return CommandResult(
        args=args,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )


def parse_version(text: str) -> Optional[tuple]:
    match = _VERSION_PATTERN.search(text or "")
    if not match:
        return None
    return tuple(int(part) for part in match.group(1).split("."))


def supports_graceful_reload(version: Optional[str], minimum: str = "4.4") -> bool:
    """Whether the installed service version can pick up new TLS material without a restart."""
    installed = parse_version(version or "")
    required = parse_version(minimum)
    if installed is None or required is None:
        return False
    width = max(len(installed), len(required))
    installed += (0,) * (width - len(installed))
    required += (0,) * (width - len(required))
    return installed >= required


class ServiceController(abc.ABC):
    """Process-supervisor operations for one managed service."""

    name: str

    @abc.abstractmethod
    def reload(self) -> CommandResult:
        ...

    @abc.abstractmethod
    def restart(self) -> CommandResult:
        ...

    @abc.abstractmethod
    def validate(self) -> CommandResult:
        ...

    @abc.abstractmethod
    def version(self) -> Optional[str]:
        ...

    @abc.abstractmethod
    def is_active(self) -> bool:
        ...


class SystemdServiceController(ServiceController):
    def __init__(
        self,
        service: str,
        timeout: float = 60.0,
        validate_commands: Sequence[Sequence[str]] = (),
        version_command: Optional[Sequence[str]] = None,
        ping_command: Optional[Sequence[str]] = None,
        poll_attempts: int = 15,
        poll_interval: float = 2.0,
        runner: Callable[[Sequence[str], float], CommandResult] = run_command,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.name = service
        self.timeout = timeout
        self.validate_commands = [list(command) for command in validate_commands]
        self.version_command = list(version_command) if version_command else None
        self.ping_command = list(ping_command) if ping_command else None
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.runner = runner
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "SystemdServiceController":
        config_path = str(settings.SERVICE_CONFIG_PATH)
        validate_commands = []
        if settings.SERVICE_VALIDATE_COMMAND:
            validate_commands.append(
                shlex.split(settings.SERVICE_VALIDATE_COMMAND.format(config=config_path))
            )
        return cls(
            service=settings.SERVICE_NAME,
            timeout=settings.COMMAND_TIMEOUT_SECONDS,
            validate_commands=validate_commands,
            version_command=shlex.split(settings.SERVICE_VERSION_COMMAND)
            if settings.SERVICE_VERSION_COMMAND
            else None,
            ping_command=shlex.split(settings.SERVICE_PING_COMMAND)
            if settings.SERVICE_PING_COMMAND
            else None,
            poll_attempts=settings.VALIDATION_ATTEMPTS,
            poll_interval=settings.VALIDATION_INTERVAL_SECONDS,
        )

    def _systemctl(self, *args: str) -> CommandResult:
        return self.runner(["systemctl", *args, self.name], self.timeout)

    def reload(self) -> CommandResult:
        return self._systemctl("reload")

    def restart(self) -> CommandResult:
        return self._systemctl("restart")

    def is_active(self) -> bool:
        return self._systemctl("is-active", "--quiet").ok

    def version(self) -> Optional[str]:
        if not self.version_command:
            return None
        result = self.runner(self.version_command, self.timeout)
        if not result.ok:
            logger.warning("Could not determine %s version: %s", self.name, result.describe())
            return None
        parsed = parse_version(result.stdout)
        return ".".join(str(part) for part in parsed) if parsed else None

    def validate(self) -> CommandResult:
        for command in self.validate_commands:
            result = self.runner(command, self.timeout)
            if not result.ok:
                return result

        # Bounded poll: the service has to come up within the attempt budget
        last = CommandResult(args=["systemctl", "is-active", self.name], returncode=1)
        for attempt in range(1, self.poll_attempts + 1):
            if self.is_active():
                if not self.ping_command:
                    return CommandResult(args=last.args, returncode=0)
                last = self.runner(self.ping_command, self.timeout)
                if last.ok:
                    return last
            if attempt < self.poll_attempts:
                self.sleep(self.poll_interval)

        logger.warning(
            "%s not healthy after %d attempt(s)", self.name, self.poll_attempts
        )
        return CommandResult(
            args=last.args,
            returncode=last.returncode if last.returncode else 1,
            stdout=last.stdout,
            stderr=last.stderr or f"{self.name} did not become healthy",
            timed_out=last.timed_out,
        )
