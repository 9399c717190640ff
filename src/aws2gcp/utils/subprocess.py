"""Subprocess wrapper for the gcloud CLI with logging and secret redaction."""

from __future__ import annotations

import os
import shutil
import subprocess

from aws2gcp.utils.logging import get_logger

logger = get_logger(__name__)


class CommandResult:
    """Result of a subprocess execution."""

    def __init__(self, returncode: int, stdout: str = "", stderr: str = ""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined (gcloud writes status lines to stderr)."""
        return f"{self.stdout}\n{self.stderr}".strip()


class CommandError(RuntimeError):
    """A command exited non-zero while ``check`` was requested."""

    def __init__(self, message: str, result: CommandResult):
        super().__init__(message)
        self.result = result


def run_command(
    cmd: list[str],
    check: bool = True,
    timeout: int | None = None,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
) -> CommandResult:
    """Run a system command, capturing its output.

    Args:
        cmd: Command and arguments as list
        check: Raise on non-zero exit code
        timeout: Command timeout in seconds
        env: Additional environment variables (merged with current env)
        cwd: Working directory

    Returns:
        CommandResult with returncode, stdout, stderr

    Raises:
        CommandError: If check=True and command fails
        TimeoutError: If command exceeds timeout
        FileNotFoundError: If the executable is not installed
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    safe_cmd = _redact_sensitive(cmd)
    logger.debug(f"Running: {' '.join(safe_cmd)}")

    try:
        completed = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=full_env,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired:
        raise TimeoutError(f"Command timed out after {timeout}s: {' '.join(safe_cmd)}")

    result = CommandResult(completed.returncode, completed.stdout, completed.stderr)

    if check and not result.success:
        error_msg = result.stderr.strip() if result.stderr else f"exit code {result.returncode}"
        raise CommandError(f"Command failed ({' '.join(safe_cmd)}): {error_msg}", result)

    return result


def check_tool_available(tool: str) -> bool:
    """Check if a system tool is available in PATH."""
    return shutil.which(tool) is not None


def verify_required_tools() -> dict[str, bool]:
    """Verify all required system tools are available.

    Returns dict of {tool_name: is_available}.
    """
    tools = {
        "gcloud": "Google Cloud CLI (disk image import)",
    }

    results = {}
    for tool, description in tools.items():
        available = check_tool_available(tool)
        results[tool] = available
        status = "[green]ok[/green]" if available else "[red]missing[/red]"
        logger.info(f"  {status} {tool}: {description}")

    return results


def _redact_sensitive(cmd: list[str]) -> list[str]:
    """Redact passwords and secrets from command args for logging."""
    sensitive_keys = {"password", "secret", "token", "key-file", "credential"}
    redacted = []
    skip_next = False

    for i, arg in enumerate(cmd):
        if skip_next:
            redacted.append("[REDACTED]")
            skip_next = False
            continue

        lower = arg.lower()
        if any(k in lower for k in sensitive_keys) and "=" in arg:
            key, _ = arg.split("=", 1)
            redacted.append(f"{key}=[REDACTED]")
        elif any(k in lower for k in sensitive_keys) and i + 1 < len(cmd):
            redacted.append(arg)
            skip_next = True
        else:
            redacted.append(arg)

    return redacted
