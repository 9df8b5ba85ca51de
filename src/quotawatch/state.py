import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()


class JsonStateFile:
    """
    JsonStateFile: Is a thread-safe holder for one JSON object
    persisted on disk.

    Reads of a missing or corrupt file yield an empty document and
    failed writes are logged and dropped: the data kept here is a
    monitoring aid, losing one update is acceptable.
    """

    def __init__(self, path: "str | Path") -> "None":
        self._path = Path(path).expanduser()
        self._lock: "threading.Lock" = threading.Lock()

    @property
    def path(self) -> "Path":
        return self._path

    @property
    def lock(self) -> "threading.Lock":
        """
        guards a load-modify-save sequence within this process.
        """
        return self._lock

    def load(self) -> "dict[str, Any]":
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("state_read_failed", path=str(self._path), error=str(exc))
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, data: "dict[str, Any]") -> "bool":
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("state_write_failed", path=str(self._path), error=str(exc))
            return False
        return True
