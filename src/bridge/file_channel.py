"""
Filesystem side of the bridge: the command file we write and the response
file the terminal writes back.

Writes are atomic (temp file in the same folder, then `os.replace`) so the
terminal never reads a half-written command. Reads never cache: every call
goes back to disk.

The response file is only deleted once its id has been matched to the
pending command; a file that fails to decode is left alone because the
terminal may still be writing it.
"""
from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional, Union
import json
import logging
import os
import tempfile

from . import command_schema
from .command_schema import Response
from .errors import MalformedPayload


logger = logging.getLogger(__name__)


def atomic_write(path: Path, data: bytes) -> Path:
    """Write `data` to `path` via a temp file + rename in the same folder."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(mode="wb", delete=False, dir=str(path.parent), prefix=path.name + ".", suffix=".tmp") as tf:
            tf.write(data)
            tf.flush()
            os.fsync(tf.fileno())
            tmp_path = Path(tf.name)

        os.replace(str(tmp_path), str(path))
    except Exception:
        # Cleanup temp file on failure
        if tmp_path is not None:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove temp file %s: %s", tmp_path, exc)
        raise

    return path


class FileChannel:
    """Command/response file pair inside the terminal's files folder."""

    def __init__(
        self,
        folder: Union[str, Path],
        command_file: str = "command.txt",
        response_file: str = "response.txt",
    ) -> None:
        self.folder = Path(folder)
        self.command_path = self.folder / command_file
        self.response_path = self.folder / response_file

    def write_command_file(self, data: bytes) -> Path:
        path = atomic_write(self.command_path, data)
        logger.debug("Wrote command file %s (%d bytes)", path, len(data))
        return path

    def command_pending(self) -> bool:
        """True while a command file exists that the terminal has not consumed."""
        return self.command_path.exists()

    def read_command_id(self) -> Optional[str]:
        try:
            text = self.command_path.read_text(encoding="utf-8")
            return json.loads(text).get("id")
        except FileNotFoundError:
            return None
        except (ValueError, AttributeError) as exc:
            logger.debug("Unreadable command file %s: %s", self.command_path, exc)
            return None

    def discard_command(self, command_id: str) -> bool:
        """Remove the command file if it still holds `command_id`."""
        if self.read_command_id() != command_id:
            return False
        self.command_path.unlink(missing_ok=True)
        logger.info("Removed unconsumed command file for %s", command_id)
        return True

    def try_read_response(self) -> Optional[Response]:
        """Return the decoded response, or None when absent, empty or partial."""
        try:
            raw = self.response_path.read_bytes()
        except FileNotFoundError:
            return None
        if not raw.strip():
            return None
        try:
            return command_schema.decode(raw)
        except MalformedPayload as exc:
            logger.debug("Response file not ready (%s); retrying next tick", exc.reason)
            return None

    def try_read_and_consume_response(self, matches: Callable[[Response], bool]) -> Optional[Response]:
        """Read the response file and delete it only when `matches(response)` holds."""
        resp = self.try_read_response()
        if resp is None:
            return None
        if matches(resp):
            self.consume_response()
        return resp

    def consume_response(self) -> None:
        self.response_path.unlink(missing_ok=True)

    def cleanup(self) -> List[Path]:
        """Delete leftover command/response files from a previous run."""
        removed: List[Path] = []
        for p in (self.command_path, self.response_path):
            if p.exists():
                p.unlink(missing_ok=True)
                removed.append(p)
        for tmp in self.folder.glob(self.command_path.name + ".*.tmp"):
            tmp.unlink(missing_ok=True)
            removed.append(tmp)
        if removed:
            logger.info("Removed stale bridge files: %s", ", ".join(p.name for p in removed))
        return removed


__all__ = ["FileChannel", "atomic_write"]
