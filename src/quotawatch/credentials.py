import json
import os
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()

# wall-clock bound for every shell-out to an OS secret store
KEYRING_TIMEOUT_SECONDS = 5.0


def expand_home(path: "str | Path") -> "Path":
    """
    expands a leading "~" to the user's home directory.
    """
    return Path(path).expanduser()


def read_credentials(path: "str | Path") -> "dict[str, Any] | None":
    """
    reads and parses a JSON credential file. Returns None when the
    file is missing, unreadable, malformed or not a JSON object.
    """
    resolved = expand_home(path)
    try:
        text = resolved.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.debug("credentials_read_failed", path=str(resolved), error=str(exc))
        return None

    try:
        data = json.loads(text)
    except ValueError:
        logger.debug("credentials_malformed", path=str(resolved))
        return None

    if not isinstance(data, dict):
        return None
    return data


def write_credentials(path: "str | Path", data: "dict[str, Any]") -> "bool":
    """
    writes a credential document back to disk. The write goes through
    a temp file in the same directory so a crash never leaves a
    truncated file behind. Returns False on failure.
    """
    resolved = expand_home(path)
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=resolved.parent, prefix=f".{resolved.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, resolved)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except (OSError, TypeError, ValueError) as exc:
        logger.warning("credentials_write_failed", path=str(resolved), error=str(exc))
        return False
    return True


def _run_secret_tool(
    args: "list[str]", stdin: "str | None" = None
) -> "subprocess.CompletedProcess[str] | None":
    """
    runs an OS secret-store command with a bounded timeout. Returns
    None when the binary is missing or the command times out.
    """
    try:
        return subprocess.run(
            args,
            input=stdin,
            capture_output=True,
            text=True,
            timeout=KEYRING_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        logger.warning("keyring_timeout", command=args[0])
        return None
    except (FileNotFoundError, OSError, subprocess.SubprocessError):
        logger.debug("keyring_unavailable", command=args[0])
        return None


def read_keyring_secret(service: "str", account: "str") -> "str | None":
    """
    reads a secret from the OS keyring.
     - macOS: `security find-generic-password`
     - Linux: `secret-tool lookup` (libsecret)
    Returns None if the entry is missing or the store is unavailable.
    """
    if sys.platform == "darwin":
        args = ["security", "find-generic-password", "-s", service, "-a", account, "-w"]
    elif sys.platform.startswith("linux"):
        args = ["secret-tool", "lookup", "service", service, "account", account]
    else:
        return None

    result = _run_secret_tool(args)
    if result is None or result.returncode != 0:
        return None
    return result.stdout.strip() or None


def write_keyring_secret(service: "str", account: "str", value: "str") -> "bool":
    """
    writes (or replaces) a secret in the OS keyring. Returns False
    when the store is unavailable or rejects the write.
    """
    if sys.platform == "darwin":
        # -U updates the entry in place when it already exists
        args = [
            "security",
            "add-generic-password",
            "-U",
            "-s",
            service,
            "-a",
            account,
            "-w",
            value,
        ]
        result = _run_secret_tool(args)
    elif sys.platform.startswith("linux"):
        args = [
            "secret-tool",
            "store",
            f"--label={service}",
            "service",
            service,
            "account",
            account,
        ]
        # secret-tool reads the secret from stdin
        result = _run_secret_tool(args, stdin=value)
    else:
        return False

    if result is None or result.returncode != 0:
        logger.warning("keyring_write_failed", service=service, account=account)
        return False
    return True


class FileCredentialSource:
    """
    FileCredentialSource loads and persists a credential document
    stored as a JSON file.
    """

    def __init__(self, path: "str | Path") -> "None":
        self._path = expand_home(path)

    @property
    def path(self) -> "Path":
        return self._path

    @property
    def description(self) -> "str":
        return f"file:{self._path}"

    def load(self) -> "dict[str, Any] | None":
        return read_credentials(self._path)

    def save(self, document: "dict[str, Any]") -> "bool":
        return write_credentials(self._path, document)


class KeyringCredentialSource:
    """
    KeyringCredentialSource loads and persists a credential document
    stored as a JSON string secret in the OS keyring.
    """

    def __init__(self, service: "str", account: "str") -> "None":
        self._service = service
        self._account = account

    @property
    def description(self) -> "str":
        return f"keyring:{self._service}/{self._account}"

    def load(self) -> "dict[str, Any] | None":
        secret = read_keyring_secret(self._service, self._account)
        if not secret:
            return None
        try:
            data = json.loads(secret)
        except ValueError:
            logger.debug("keyring_secret_malformed", service=self._service)
            return None
        if not isinstance(data, dict):
            return None
        return data

    def save(self, document: "dict[str, Any]") -> "bool":
        return write_keyring_secret(
            self._service, self._account, json.dumps(document)
        )
