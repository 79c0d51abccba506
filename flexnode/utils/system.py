"""Host-level helpers: command execution, privileged file writes and systemd services."""
import logging
import os
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import requests

from ..errors import CommandError
from . import CancelToken, OperationCancelled, redact_command

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 10
CANCEL_CHECK_INTERVAL = 0.5
TERMINATE_GRACE_PERIOD = 5

ALWAYS_NEEDS_SUDO = (
    "apt", "apt-get", "dpkg", "systemctl", "mount", "umount",
    "modprobe", "sysctl", "azcmagent", "usermod",
)
CONDITIONAL_SUDO = ("mkdir", "cp", "chmod", "chown", "mv", "tar", "rm", "install", "ln", "cat")
SYSTEM_PATHS = ("/etc/", "/usr/", "/var/", "/opt/", "/boot/", "/sys/", "/run/")

PathLike = Union[str, Path]


def requires_sudo(args: Sequence[str]) -> bool:
    """Decide whether a command needs root based on its name and arguments."""
    if not args:
        return False
    name = os.path.basename(args[0])
    if name in ALWAYS_NEEDS_SUDO:
        return True
    if name in CONDITIONAL_SUDO:
        return any(str(arg).startswith(SYSTEM_PATHS) for arg in args[1:])
    return False


def _is_root() -> bool:
    return os.geteuid() == 0


def run_command(
    args: Sequence[str],
    timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT,
    check: bool = True,
    capture: bool = True,
    sudo: Optional[bool] = None,
    env: Optional[Dict[str, str]] = None,
    token: Optional[CancelToken] = None,
) -> subprocess.CompletedProcess:
    """Run an external command.

    Args:
        args: Command and arguments
        timeout: Seconds before the command is killed, or None for no limit
        check: Raise CommandError on a non-zero exit status
        capture: Capture stdout/stderr instead of inheriting the terminal
        sudo: Force (True) or suppress (False) sudo; None decides from the command
        env: Extra environment variables
        token: When given, the command is terminated as soon as it is cancelled

    Returns:
        The completed process with text output

    Raises:
        CommandError: If the command is missing, times out, or fails with check=True
        OperationCancelled: If ``token`` fires while the command runs
    """
    cmd = [str(a) for a in args]
    use_sudo = requires_sudo(cmd) if sudo is None else sudo
    if use_sudo and not _is_root():
        cmd = ["sudo", "-E"] + cmd

    run_env = None
    if env:
        run_env = dict(os.environ)
        run_env.update(env)

    logger.debug(f"Running command: {redact_command(cmd)}")
    try:
        if token is None:
            result = subprocess.run(
                cmd,
                capture_output=capture,
                text=True,
                timeout=timeout,
                env=run_env,
            )
        else:
            result = _run_cancellable(cmd, timeout, capture, run_env, token)
    except FileNotFoundError as e:
        raise CommandError(cmd, 127, stderr=str(e)) from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(cmd, -1, stderr=f"timed out after {timeout}s") from e

    if check and result.returncode != 0:
        raise CommandError(cmd, result.returncode, result.stdout or "", result.stderr or "")
    return result


def _stop_process(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.communicate(timeout=TERMINATE_GRACE_PERIOD)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.communicate()


def _run_cancellable(cmd: List[str], timeout: Optional[float], capture: bool,
                     env: Optional[Dict[str, str]], token: CancelToken) -> subprocess.CompletedProcess:
    pipe = subprocess.PIPE if capture else None
    deadline = None if timeout is None else time.monotonic() + timeout
    proc = subprocess.Popen(cmd, stdout=pipe, stderr=pipe, text=True, env=env)
    while True:
        # communicate() can be retried after a timeout without losing output
        try:
            stdout, stderr = proc.communicate(timeout=CANCEL_CHECK_INTERVAL)
            return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)
        except subprocess.TimeoutExpired:
            pass
        if token.cancelled:
            logger.warning(f"Cancelling command: {redact_command(cmd)}")
            _stop_process(proc)
            raise OperationCancelled(f"command '{redact_command(cmd)}' cancelled")
        if deadline is not None and time.monotonic() >= deadline:
            _stop_process(proc)
            raise subprocess.TimeoutExpired(cmd, timeout)


def command_output(args: Sequence[str], timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT) -> str:
    """Run a command and return its stdout, raising CommandError on failure."""
    return run_command(args, timeout=timeout).stdout or ""


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def file_exists(path: PathLike) -> bool:
    return os.path.exists(path)


def write_file_atomic(path: PathLike, data: Union[str, bytes], mode: int = 0o644) -> None:
    """Write ``data`` to ``path`` so readers only ever see old or new content.

    The data is written to a temporary file in the same directory, flushed to
    disk and then renamed over the destination.
    """
    path = Path(path)
    if isinstance(data, str):
        data = data.encode()

    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def write_system_file(path: PathLike, data: Union[str, bytes], mode: int = 0o644) -> None:
    """Write a file under a system path, escalating through sudo when needed."""
    path = Path(path)
    if _is_root() or os.access(path.parent, os.W_OK):
        path.parent.mkdir(parents=True, exist_ok=True)
        write_file_atomic(path, data, mode)
        return

    if isinstance(data, str):
        data = data.encode()
    run_command(["mkdir", "-p", str(path.parent)], sudo=True)
    with tempfile.NamedTemporaryFile(delete=False) as tmp:
        tmp.write(data)
    try:
        run_command(["install", "-m", f"{mode:o}", tmp.name, str(path)], sudo=True)
    finally:
        os.unlink(tmp.name)


def remove_path(path: PathLike, recursive: bool = False) -> None:
    """Remove a file or directory, treating an already-missing path as success."""
    if not os.path.lexists(path):
        logger.debug(f"{path} does not exist, nothing to remove")
        return
    flags = "-rf" if recursive else "-f"
    run_command(["rm", flags, str(path)])


def download_file(url: str, destination: PathLike, timeout: int = 300) -> None:
    """Stream ``url`` to ``destination``.

    Raises:
        requests.HTTPError: If the server answers with an error status
        ValueError: If the downloaded file is empty
    """
    logger.info(f"Downloading {url}")
    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(destination, "wb") as f:
            for chunk in response.iter_content(chunk_size=1024 * 1024):
                if chunk:
                    f.write(chunk)
    if os.path.getsize(destination) == 0:
        raise ValueError(f"downloaded file from {url} is empty")


def extract_tarball(archive: PathLike, destination: PathLike, members: Optional[List[str]] = None,
                    strip_components: int = 0, token: Optional[CancelToken] = None) -> None:
    """Extract a gzipped tarball into a (possibly system) directory."""
    run_command(["mkdir", "-p", str(destination)])
    args = ["tar", "-xzf", str(archive), "-C", str(destination)]
    if strip_components:
        args.append(f"--strip-components={strip_components}")
    if members:
        args.extend(members)
    run_command(args, timeout=300, token=token)


def is_service_active(service: str) -> bool:
    try:
        output = run_command(["systemctl", "is-active", service], check=False).stdout or ""
    except CommandError:
        return False
    return output.strip() == "active"


def service_exists(service: str) -> bool:
    try:
        output = run_command(["systemctl", "list-unit-files", f"{service}.service"], check=False).stdout or ""
    except CommandError:
        return False
    return f"{service}.service" in output


def stop_service(service: str, token: Optional[CancelToken] = None) -> None:
    run_command(["systemctl", "stop", service], timeout=120, token=token)


def disable_service(service: str) -> None:
    run_command(["systemctl", "disable", service], timeout=60)


def enable_and_start_service(service: str, token: Optional[CancelToken] = None) -> None:
    run_command(["systemctl", "enable", "--now", service], timeout=120, token=token)


def reload_systemd() -> None:
    run_command(["systemctl", "daemon-reload"], timeout=60)


def hostname() -> str:
    return os.uname().nodename


def machine_arch() -> str:
    """Return the Go-style architecture name used in release artifact names."""
    machine = os.uname().machine
    return {"x86_64": "amd64", "aarch64": "arm64", "armv7l": "arm"}.get(machine, machine)


def read_system_file(path: PathLike) -> str:
    """Read a file that may only be readable by root."""
    try:
        with open(path, "r") as f:
            return f.read()
    except PermissionError:
        return command_output(["cat", str(path)])
