import datetime
import subprocess
from pathlib import Path
from typing import Optional

# Path to store the build log, main() moves it into the kernel directory
BUILD_LOG_FILE = Path.cwd() / "kernel_build.log"


class BuildError(Exception):
    """Base class for every failure that should stop the build"""


class CommandError(BuildError):
    def __init__(self, command: str, returncode: int,
                 stdout: str = "", stderr: str = ""):
        super().__init__(f"Command failed (exit {returncode}): '{command}'")
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class FetchFailed(BuildError):
    """
    Raised when every candidate location for an artifact was tried
    and none produced a verified result
    """

    def __init__(self, name: str, attempts: list[str]):
        tried = ", ".join(attempts) if attempts else "no candidates"
        super().__init__(f"Failed to fetch '{name}' (tried: {tried})")
        self.name = name
        self.attempts = attempts


class PatchIncompatible(BuildError):
    """Raised when a patch does not apply cleanly to the checkout"""

    def __init__(self, patch: Path, output: str = ""):
        super().__init__(f"Patch does not apply: '{patch.name}'")
        self.patch = patch
        self.output = output


def log_message(message: str):
    """
    Logs a message to console and appends it to the build log file

    Args:
        message (str): Message to log
    """
    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    line = f"{timestamp} - {message}"
    print(line)

    try:
        BUILD_LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(BUILD_LOG_FILE, "a", encoding="utf-8") as log_file:
            log_file.write(line + "\n")
    except OSError as e:
        print(f"Logging failed: {e}")


def run_cmd(command: str,
            cwd: Optional[Path] = None,
            fatal_on_error: bool = True,
            quiet: bool = False
            ) -> Optional[str]:
    """
    Runs a shell command. The global PATH environment variable is expected
    to be set correctly by setup_environment()

    Args:
        command: Shell command to run
        cwd: Working directory (optional)
        fatal_on_error: Raise CommandError on failure if True
        quiet: Do not dump the output of a failed, non-fatal command

    Returns:
        Command stdout, or None if failed and not fatal
    """
    log_message(
        f"Running: '{command}' in '{cwd.resolve()}'"
        if cwd else f"Running: '{command}'"
    )

    try:
        result = subprocess.run(
            command, shell=True, check=True, cwd=cwd,
            capture_output=True, text=True, encoding="utf-8",
            errors="replace"
        )
        log_message("Command succeeded")
        return result.stdout
    except subprocess.CalledProcessError as e:
        log_message(f"[ERROR] Command failed (exit {e.returncode}): '{command}'")
        if fatal_on_error or not quiet:
            if e.stdout:
                log_message(f"stdout:\n{e.stdout.strip()}")
            if e.stderr:
                log_message(f"stderr:\n{e.stderr.strip()}")
        if fatal_on_error:
            raise CommandError(command, e.returncode,
                               e.stdout or "", e.stderr or "") from e
        return None
